import logging
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from relay.core.locks import KeyedLocks
from relay.db.database import get_utc_now
from relay.db.models.user import User
from relay.sockets.connection_hub import ConnectionHub
from relay.sockets.presence_registry import PresenceRegistry

logger = logging.getLogger(__name__)


class PresenceService:
    """
    Online/offline transitions: registry update, best-effort User row update,
    user_online / user_offline broadcast.
    Transitions of one user are serialised so the persisted flag always ends
    up matching the registry.
    """

    def __init__(self, registry: PresenceRegistry, hub: ConnectionHub, session_factory):
        self.registry = registry
        self.hub = hub
        self.session_factory = session_factory
        self._user_locks = KeyedLocks()

    async def connect(self, user_id: int, connection_id: str) -> bool:
        async with self._user_locks.hold(user_id):
            first = await self.registry.register(user_id, connection_id)
            logger.info(
                f"[Presence] user {user_id} connected ({connection_id}), "
                f"connections={self.registry.connection_count(user_id)}"
            )
            if first:
                await self._persist(user_id)
                await self.hub.broadcast("user_online", {"userId": user_id}, exclude_user_id=user_id)
            return first

    async def disconnect(self, connection_id: str) -> Optional[int]:
        user_id = self.registry.owner_of(connection_id)
        if user_id is None:
            return None

        async with self._user_locks.hold(user_id):
            result = await self.registry.unregister(connection_id)
            if result is None:
                return None
            _, went_offline = result
            logger.info(
                f"[Presence] user {user_id} disconnected ({connection_id}), "
                f"connections={self.registry.connection_count(user_id)}"
            )
            if went_offline:
                await self._persist(user_id)
                await self.hub.broadcast("user_offline", {"userId": user_id}, exclude_user_id=user_id)
        return user_id

    def is_online(self, user_id: int) -> bool:
        return self.registry.is_online(user_id)

    def list_online(self) -> List[int]:
        return self.registry.list_online()

    async def _persist(self, user_id: int):
        # DB 반영 실패는 치명적이지 않음 (로그만 남김)
        online = self.registry.is_online(user_id)
        try:
            async with self.session_factory() as db:
                await db.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(is_online=online, last_seen=get_utc_now())
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"[Presence] failed to persist is_online={online} for user {user_id}: {e}")

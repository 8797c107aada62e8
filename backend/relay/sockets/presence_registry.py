import asyncio
from typing import Dict, List, Optional, Set, Tuple


class PresenceRegistry:
    """
    In-memory map of user_id -> open connection ids (never persisted).

    This is the only place the process keeps presence; everything else goes
    through register / unregister / is_online. Mutations are serialised by an
    asyncio.Lock, reads return snapshots.
    """

    def __init__(self):
        self._connections: Dict[int, Set[str]] = {}
        self._owners: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def register(self, user_id: int, connection_id: str) -> bool:
        """Adds a connection. Returns True when this is the user's first one."""
        async with self._lock:
            previous_owner = self._owners.get(connection_id)
            if previous_owner is not None and previous_owner != user_id:
                raise ValueError(f"connection {connection_id} already belongs to user {previous_owner}")

            conns = self._connections.setdefault(user_id, set())
            was_offline = not conns
            conns.add(connection_id)
            self._owners[connection_id] = user_id
            return was_offline

    async def unregister(self, connection_id: str) -> Optional[Tuple[int, bool]]:
        """
        Removes a connection.
        Returns (user_id, went_offline) or None when the id was unknown.
        """
        async with self._lock:
            user_id = self._owners.pop(connection_id, None)
            if user_id is None:
                return None

            conns = self._connections.get(user_id, set())
            conns.discard(connection_id)
            if conns:
                return user_id, False

            self._connections.pop(user_id, None)
            return user_id, True

    def owner_of(self, connection_id: str) -> Optional[int]:
        return self._owners.get(connection_id)

    def is_online(self, user_id: int) -> bool:
        return bool(self._connections.get(user_id))

    def list_online(self) -> List[int]:
        return [uid for uid, conns in self._connections.items() if conns]

    def connection_ids(self, user_id: int) -> List[str]:
        return list(self._connections.get(user_id, ()))

    def connection_count(self, user_id: int) -> int:
        return len(self._connections.get(user_id, ()))

import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import and_, case, delete, func, select

from relay.core.config import (
    NOTIFICATION_PAGE_SIZE,
    NOTIFICATION_RETENTION_DAYS,
    NOTIFICATION_SWEEP_INTERVAL_SECONDS,
)
from relay.core.errors import NotificationNotFoundError
from relay.core.retry import with_store_retry
from relay.db.database import get_utc_now
from relay.db.models.notification import Notification
from relay.schemas.notification import NotificationCreate, NotificationFilter, NotificationRead
from relay.sockets.connection_hub import ConnectionHub
from relay.sockets.presence_registry import PresenceRegistry

logger = logging.getLogger(__name__)

# high -> medium -> normal/low
PRIORITY_ORDER = case(
    (Notification.priority == "high", 0),
    (Notification.priority == "medium", 1),
    else_=2,
)


class NotificationService:
    """
    Offline notifications: persisted on fan-out, replayed on reconnect/poll,
    marked read on acknowledgement and swept in the background.
    """

    def __init__(self, session_factory, registry: PresenceRegistry, hub: ConnectionHub):
        self.session_factory = session_factory
        self.registry = registry
        self.hub = hub

    @staticmethod
    def _scope(user_id: int, filters: Optional[NotificationFilter]) -> list:
        clauses = [Notification.user_id == user_id]
        if filters is not None:
            clauses.extend(filters.to_clauses())
        return clauses

    # --- Enqueue ---

    async def enqueue(self, user_id: int, payload: NotificationCreate) -> Notification:
        # 저장 직전에 접속 여부를 다시 확인 (중복 수신은 클라이언트가 id로 제거)
        online = self.registry.is_online(user_id)

        async def _insert() -> Notification:
            async with self.session_factory() as db:
                notification = Notification(
                    user_id=user_id,
                    type=payload.type,
                    title=payload.title,
                    message=payload.message,
                    data=payload.data,
                    priority=payload.priority,
                )
                db.add(notification)
                await db.commit()
                await db.refresh(notification)
                return notification

        notification = await with_store_retry(_insert, label=f"notification for user {user_id}")
        logger.info(f"[Notification] #{notification.id} ({notification.type}) queued for user {user_id}")

        if online:
            await self.hub.send_to_user(
                user_id, "notification", NotificationRead.model_validate(notification).to_wire()
            )
            await self.emit_count(user_id)
        return notification

    async def emit_count(self, user_id: int):
        if not self.registry.is_online(user_id):
            return
        unread = await self.unread_count(user_id)
        await self.hub.send_to_user(user_id, "notification_count_update", {"unreadCount": unread})

    # --- Reads ---

    async def get(self, user_id: int, notification_id: int) -> Notification:
        async with self.session_factory() as db:
            notification = await db.get(Notification, notification_id)
        if notification is None or notification.user_id != user_id:
            raise NotificationNotFoundError(details={"notificationId": notification_id})
        return notification

    async def get_unread(
        self,
        user_id: int,
        filters: Optional[NotificationFilter] = None,
        limit: int = NOTIFICATION_PAGE_SIZE,
        offset: int = 0,
    ) -> List[Notification]:
        stmt = (
            select(Notification)
            .where(*self._scope(user_id, filters), Notification.is_read.is_(False))
            .order_by(PRIORITY_ORDER, Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
            .offset(offset)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def list(
        self,
        user_id: int,
        filters: Optional[NotificationFilter] = None,
        limit: int = NOTIFICATION_PAGE_SIZE,
        offset: int = 0,
    ) -> List[Notification]:
        stmt = (
            select(Notification)
            .where(*self._scope(user_id, filters))
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
            .offset(offset)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def unread_count(self, user_id: int) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count(Notification.id)).where(
                    Notification.user_id == user_id, Notification.is_read.is_(False)
                )
            )
            return result.scalar_one()

    async def count(self, user_id: int) -> dict:
        async with self.session_factory() as db:
            result = await db.execute(
                select(
                    func.count(Notification.id),
                    func.count(Notification.id).filter(Notification.is_read.is_(False)),
                ).where(Notification.user_id == user_id)
            )
            total, unread = result.one()
        return {"total_count": total, "unread_count": unread}

    # --- Writes ---

    async def mark_read(
        self,
        user_id: int,
        notification_ids: Optional[List[int]] = None,
        filters: Optional[NotificationFilter] = None,
    ) -> List[Notification]:
        """
        Marks the user's unread notifications as read.
        notification_ids=None means every unread notification matching `filters`.
        Idempotent: already read (or foreign) ids are skipped. Returns the newly read rows.
        """
        clauses = self._scope(user_id, filters)
        clauses.append(Notification.is_read.is_(False))
        if notification_ids is not None:
            if not notification_ids:
                return []
            clauses.append(Notification.id.in_(list(notification_ids)))

        async def _write() -> List[Notification]:
            now = get_utc_now()
            async with self.session_factory() as db:
                result = await db.execute(select(Notification).where(and_(*clauses)))
                rows = list(result.scalars().all())
                for notification in rows:
                    notification.is_read = True
                    notification.read_at = now
                await db.commit()
                return rows

        rows = await with_store_retry(_write, label=f"mark notifications read for user {user_id}")
        if rows:
            logger.info(f"[Notification] user {user_id} read {len(rows)} notification(s)")
            await self.emit_count(user_id)
        return rows

    async def delete(self, user_id: int, notification_id: int):
        async with self.session_factory() as db:
            result = await db.execute(
                delete(Notification).where(
                    Notification.id == notification_id, Notification.user_id == user_id
                )
            )
            await db.commit()
        if result.rowcount == 0:
            raise NotificationNotFoundError(details={"notificationId": notification_id})
        await self.emit_count(user_id)

    async def delete_read(self, user_id: int) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                delete(Notification).where(Notification.user_id == user_id, Notification.is_read.is_(True))
            )
            await db.commit()
        return result.rowcount

    async def sweep(self, retention_days: int = NOTIFICATION_RETENTION_DAYS) -> int:
        """Deletes read notifications created more than `retention_days` ago."""
        cutoff = get_utc_now() - timedelta(days=retention_days)
        async with self.session_factory() as db:
            result = await db.execute(
                delete(Notification).where(Notification.is_read.is_(True), Notification.created_at < cutoff)
            )
            await db.commit()
        if result.rowcount:
            logger.info(f"[Notification] swept {result.rowcount} read notification(s) older than {retention_days} days")
        return result.rowcount


class NotificationSweeper:
    """Background retention job; never runs on the request path."""

    def __init__(
        self,
        service: NotificationService,
        interval: float = NOTIFICATION_SWEEP_INTERVAL_SECONDS,
        retention_days: int = NOTIFICATION_RETENTION_DAYS,
    ):
        self.service = service
        self.interval = interval
        self.retention_days = retention_days
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"[Sweeper] started (every {self.interval}s, retention {self.retention_days}d)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[Sweeper] stopped")

    async def _run(self):
        while True:
            try:
                await self.service.sweep(self.retention_days)
            except Exception as e:
                logger.exception(f"[Sweeper] sweep failed: {e}")
            await asyncio.sleep(self.interval)

import asyncio
import logging
from collections import OrderedDict
from typing import List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from relay.core.config import MESSAGE_PREVIEW_LENGTH, STATUS_CACHE_SIZE
from relay.core.errors import RelayError
from relay.core.locks import KeyedLocks
from relay.core.retry import with_store_retry
from relay.db.models.chat import Chat
from relay.db.models.message import Message
from relay.db.models.notification import Notification
from relay.db.models.user import User
from relay.schemas.message import MessageRead
from relay.schemas.notification import NotificationCreate, NotificationFilter
from relay.services.membership_service import ChatMembershipIndex
from relay.services.message_store import MessageStore
from relay.services.notification_service import NotificationService
from relay.services.receipt_service import SENT, STATUS_RANK, ReceiptTracker
from relay.sockets.connection_hub import ConnectionHub
from relay.sockets.presence_registry import PresenceRegistry

logger = logging.getLogger(__name__)

MEDIA_PHRASES = {
    "image": "sent an image",
    "video": "sent a video",
    "audio": "sent an audio",
    "file": "sent a file",
}


def message_preview(message: Message, sender_name: str) -> str:
    if message.type in MEDIA_PHRASES:
        return f"{sender_name} {MEDIA_PHRASES[message.type]}"
    content = message.content
    if len(content) > MESSAGE_PREVIEW_LENGTH:
        content = content[: MESSAGE_PREVIEW_LENGTH - 3] + "..."
    return content


def build_message_notification(chat: Chat, sender_name: str, message: Message) -> NotificationCreate:
    title = chat.name if chat.type == "group" and chat.name else sender_name
    return NotificationCreate(
        type="new_message",
        title=title,
        message=message_preview(message, sender_name),
        data={
            "chatId": chat.id,
            "messageId": message.id,
            "senderId": message.sender_id,
            "senderName": sender_name,
            "messageType": message.type,
        },
        priority="normal",
    )


class StatusLedger:
    """
    Last status emitted to the sender per message (bounded LRU).
    An update is published only if it ranks above the last one.
    """

    def __init__(self, capacity: int = STATUS_CACHE_SIZE):
        self.capacity = capacity
        self._entries: "OrderedDict[int, str]" = OrderedDict()

    def advance(self, message_id: int, status: str) -> bool:
        last = self._entries.get(message_id)
        if last is not None and STATUS_RANK[status] <= STATUS_RANK[last]:
            self._entries.move_to_end(message_id)
            return False
        self._entries[message_id] = status
        self._entries.move_to_end(message_id)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)
        return True

    def last(self, message_id: int) -> Optional[str]:
        return self._entries.get(message_id)


class DeliveryEngine:
    """
    Fans a newly appended message out to its recipients.

    Online recipients get `new_message` pushed and a delivery receipt (push
    assumed). Offline recipients, or recipients whose every push failed, get a
    persisted notification instead and are only marked delivered once they
    acknowledge it (pull confirmed).
    """

    def __init__(
        self,
        store: MessageStore,
        membership: ChatMembershipIndex,
        receipts: ReceiptTracker,
        notifications: NotificationService,
        registry: PresenceRegistry,
        hub: ConnectionHub,
        status_cache_size: int = STATUS_CACHE_SIZE,
    ):
        self.store = store
        self.membership = membership
        self.receipts = receipts
        self.notifications = notifications
        self.registry = registry
        self.hub = hub
        self.ledger = StatusLedger(status_cache_size)
        self._chat_locks = KeyedLocks()

    # --- Send ---

    async def send(self, chat_id: int, sender_id: int, content: str, type: str = "text") -> dict:
        """
        Appends and fans out. Returns the sender-facing message payload
        (camelCase) with its aggregate status after fan-out.
        """
        # 메시지 저장 전에 조회: 여기서 실패하면 아무것도 남지 않음
        await self.membership.require_member(chat_id, sender_id)
        chat = await with_store_retry(lambda: self.membership.get_chat(chat_id), label=f"load chat {chat_id}")
        sender_name = await with_store_retry(lambda: self._sender_name(sender_id), label=f"load user {sender_id}")

        async with self._chat_locks.hold(chat_id):
            message = await self.store.append(chat_id, sender_id, content, type)
            payload = MessageRead.model_validate(message).to_wire()
            recipients = await self._recipients(chat_id, sender_id)
            pushed = await self._push_all(recipients, payload)

        offline = recipients - pushed
        logger.info(
            f"[Delivery] message {message.id} in chat {chat_id}: "
            f"pushed={sorted(pushed)} offline={sorted(offline)}"
        )

        for user_id in sorted(pushed):
            await self._record_delivered_safely(message.id, user_id)

        if offline:
            notification = build_message_notification(chat, sender_name, message)
            for user_id in sorted(offline):
                try:
                    await self.notifications.enqueue(user_id, notification)
                except (RelayError, SQLAlchemyError) as e:
                    logger.error(f"[Delivery] notification for user {user_id} (message {message.id}) failed: {e}")

        try:
            await self.membership.touch_activity(chat_id, message_preview(message, sender_name), message.timestamp)
        except SQLAlchemyError as e:
            logger.warning(f"[Delivery] activity update for chat {chat_id} failed: {e}")

        try:
            status = await self.receipts.get_aggregate_status(message.id)
        except (RelayError, SQLAlchemyError) as e:
            logger.warning(f"[Delivery] status of message {message.id} unavailable: {e}")
            status = SENT
        self.ledger.advance(message.id, SENT)
        payload["status"] = status
        await self.hub.send_to_user(sender_id, "message_sent", {"message": payload})
        await self.publish_status(message.id, sender_id=sender_id, status=status)
        return payload

    async def _recipients(self, chat_id: int, sender_id: int) -> Set[int]:
        members = await with_store_retry(lambda: self.membership.members(chat_id), label=f"members of chat {chat_id}")
        return members - {sender_id}

    async def _push_all(self, recipients: Set[int], payload: dict) -> Set[int]:
        online = [uid for uid in sorted(recipients) if self.registry.is_online(uid)]
        if not online:
            return set()
        results = await asyncio.gather(
            *(self.hub.send_to_user(uid, "new_message", {"message": payload}) for uid in online),
            return_exceptions=True,
        )
        pushed = set()
        for user_id, result in zip(online, results):
            if isinstance(result, BaseException):
                logger.warning(f"[Delivery] push to user {user_id} raised: {result}")
            elif result > 0:
                pushed.add(user_id)
        return pushed

    async def _record_delivered_safely(self, message_id: int, user_id: int):
        # 수신자가 그사이 채팅방을 나간 경우 등은 로그만 남김
        try:
            await self.receipts.record_delivered(message_id, user_id)
        except RelayError as e:
            logger.warning(f"[Delivery] delivery receipt {message_id}/{user_id} not recorded: {e}")

    async def _sender_name(self, user_id: int) -> str:
        async with self.store.session_factory() as db:
            user = await db.get(User, user_id)
        return user.display_name if user else f"User {user_id}"

    # --- Receipts ---

    async def mark_delivered(self, user_id: int, message_id: int) -> bool:
        created = await self.receipts.record_delivered(message_id, user_id)
        if created:
            await self.publish_status(message_id)
        return created

    async def mark_read(self, user_id: int, message_id: int) -> bool:
        created = await self.receipts.record_read(message_id, user_id)
        if created:
            await self.publish_status(message_id)
        return created

    async def mark_read_up_to(self, user_id: int, chat_id: int, message_id: int) -> List[int]:
        ids = await self.receipts.record_read_up_to(chat_id, user_id, message_id)
        for mid in ids:
            await self.publish_status(mid)
        return ids

    async def acknowledge(
        self,
        user_id: int,
        notification_ids: Optional[List[int]] = None,
        filters: Optional[NotificationFilter] = None,
    ) -> List[Notification]:
        """
        Reconnect path: marks the notifications read and records delivery for
        every message they reference. Returns the newly read notifications.
        """
        notifications = await self.notifications.mark_read(user_id, notification_ids, filters)
        for notification in notifications:
            data = notification.data or {}
            message_id = data.get("messageId")
            if message_id is None:
                continue
            try:
                created = await self.receipts.record_delivered(int(message_id), user_id)
            except RelayError as e:
                logger.warning(f"[Delivery] ack of message {message_id} by user {user_id} skipped: {e}")
                continue
            if created:
                await self.publish_status(int(message_id))
        return notifications

    # --- Status ---

    async def publish_status(self, message_id: int, sender_id: Optional[int] = None, status: Optional[str] = None) -> bool:
        """Sends `message_status_update` to the sender if the aggregate advanced."""
        if sender_id is None or status is None:
            summary = await self.receipts.get_status_summary(message_id)
            sender_id, status = summary["sender_id"], summary["status"]

        if not self.ledger.advance(message_id, status):
            return False
        await self.hub.send_to_user(sender_id, "message_status_update", {"messageId": message_id, "status": status})
        logger.debug(f"[Delivery] message {message_id} -> {status}")
        return True

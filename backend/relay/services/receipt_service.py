import logging
from typing import Dict, Iterable, List, Set

from sqlalchemy import and_, exists, func, select
from sqlalchemy.exc import IntegrityError

from relay.core.errors import MessageNotFoundError, NotRecipientError
from relay.core.retry import with_store_retry
from relay.db.database import get_utc_now
from relay.db.models.chat import ChatMember
from relay.db.models.message import DeliveryReceipt, Message, ReadReceipt
from relay.services.membership_service import ChatMembershipIndex

logger = logging.getLogger(__name__)

SENT = "sent"
DELIVERED = "delivered"
READ = "read"
STATUS_RANK = {SENT: 0, DELIVERED: 1, READ: 2}


def derive_status(recipients: Set[int], delivered: Set[int], read: Set[int]) -> str:
    """
    recipients are the current members who had joined by the message
    timestamp; delivered and read hold every non-sender with a receipt,
    including members who have since left.

    read:      every recipient has a read receipt
    delivered: anyone holds a delivery (or read) receipt
    sent:      otherwise
    """
    if recipients <= read:
        return READ
    if delivered | read:
        return DELIVERED
    return SENT


async def _insert_ignore(db, model, rows: List[dict]) -> int:
    """INSERT ... ON CONFLICT (message_id, user_id) DO NOTHING. Returns the inserted row count."""
    if not rows:
        return 0

    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        inserted = 0
        for row in rows:
            try:
                async with db.begin_nested():
                    db.add(model(**row))
                inserted += 1
            except IntegrityError:
                pass
        return inserted

    stmt = insert(model).values(rows).on_conflict_do_nothing(index_elements=["message_id", "user_id"])
    result = await db.execute(stmt)
    return max(result.rowcount or 0, 0)


class ReceiptTracker:
    """
    Per-(message, user) delivery and read receipts.
    Receipts are append-only and idempotent; the sender-visible status and
    unread counts are always derived from them at query time.
    """

    def __init__(self, session_factory, membership: ChatMembershipIndex):
        self.session_factory = session_factory
        self.membership = membership

    # --- Validation ---

    async def _load_message(self, message_id: int) -> Message:
        async with self.session_factory() as db:
            message = await db.get(Message, message_id)
        if message is None:
            raise MessageNotFoundError(details={"messageId": message_id})
        return message

    async def _require_recipient(self, message_id: int, user_id: int) -> Message:
        message = await self._load_message(message_id)
        if message.sender_id == user_id:
            logger.warning(f"[Receipts] rejected: user {user_id} is the sender of message {message_id}")
            raise NotRecipientError("Sender cannot acknowledge own message", details={"messageId": message_id})
        if not await self.membership.is_member(message.chat_id, user_id):
            logger.warning(f"[Receipts] rejected: user {user_id} is not a member of chat {message.chat_id}")
            raise NotRecipientError(details={"messageId": message_id})
        return message

    # --- Writes ---

    async def record_delivered(self, message_id: int, user_id: int) -> bool:
        """Idempotent. Returns True if a new delivery receipt was written."""
        await self._require_recipient(message_id, user_id)

        async def _write() -> int:
            async with self.session_factory() as db:
                count = await _insert_ignore(
                    db, DeliveryReceipt,
                    [{"message_id": message_id, "user_id": user_id, "delivered_at": get_utc_now()}],
                )
                await db.commit()
                return count

        created = await with_store_retry(_write, label=f"delivery receipt {message_id}/{user_id}") > 0
        if created:
            logger.debug(f"[Receipts] message {message_id} delivered to {user_id}")
        return created

    async def record_read(self, message_id: int, user_id: int) -> bool:
        """
        Idempotent. Read implies delivered: a missing delivery receipt is
        written in the same transaction with the same timestamp.
        Returns True if a new read receipt was written.
        """
        await self._require_recipient(message_id, user_id)

        async def _write() -> int:
            now = get_utc_now()
            async with self.session_factory() as db:
                await _insert_ignore(
                    db, DeliveryReceipt, [{"message_id": message_id, "user_id": user_id, "delivered_at": now}]
                )
                count = await _insert_ignore(
                    db, ReadReceipt, [{"message_id": message_id, "user_id": user_id, "read_at": now}]
                )
                await db.commit()
                return count

        created = await with_store_retry(_write, label=f"read receipt {message_id}/{user_id}") > 0
        if created:
            logger.debug(f"[Receipts] message {message_id} read by {user_id}")
        return created

    async def record_read_up_to(self, chat_id: int, user_id: int, message_id: int) -> List[int]:
        """Marks every message by others in the chat with id <= message_id as read. Returns the newly read ids."""
        if not await self.membership.is_member(chat_id, user_id):
            logger.warning(f"[Receipts] rejected bulk read: user {user_id} is not a member of chat {chat_id}")
            raise NotRecipientError(details={"chatId": chat_id})

        async def _write() -> List[int]:
            now = get_utc_now()
            async with self.session_factory() as db:
                result = await db.execute(
                    select(Message.id).where(
                        Message.chat_id == chat_id,
                        Message.id <= message_id,
                        Message.sender_id != user_id,
                        ~exists().where(and_(ReadReceipt.message_id == Message.id, ReadReceipt.user_id == user_id)),
                    )
                    .order_by(Message.id)
                )
                ids = list(result.scalars().all())
                await _insert_ignore(
                    db, DeliveryReceipt,
                    [{"message_id": mid, "user_id": user_id, "delivered_at": now} for mid in ids],
                )
                await _insert_ignore(
                    db, ReadReceipt,
                    [{"message_id": mid, "user_id": user_id, "read_at": now} for mid in ids],
                )
                await db.commit()
                return ids

        return await with_store_retry(_write, label=f"bulk read {chat_id}/{user_id}")

    # --- Derived state ---

    async def _recipient_sets(self, db, messages: Iterable[Message]):
        messages = list(messages)
        if not messages:
            return {}

        chat_ids = {m.chat_id for m in messages}
        message_ids = [m.id for m in messages]

        members = await db.execute(
            select(ChatMember.chat_id, ChatMember.user_id, ChatMember.joined_at).where(ChatMember.chat_id.in_(list(chat_ids)))
        )
        member_rows = members.all()

        delivered: Dict[int, Set[int]] = {mid: set() for mid in message_ids}
        read: Dict[int, Set[int]] = {mid: set() for mid in message_ids}
        for mid, uid in (await db.execute(
            select(DeliveryReceipt.message_id, DeliveryReceipt.user_id).where(DeliveryReceipt.message_id.in_(message_ids))
        )).all():
            delivered[mid].add(uid)
        for mid, uid in (await db.execute(
            select(ReadReceipt.message_id, ReadReceipt.user_id).where(ReadReceipt.message_id.in_(message_ids))
        )).all():
            read[mid].add(uid)

        sets = {}
        for m in messages:
            # members who joined after the message was sent never count as recipients;
            # receipts of members who left keep counting
            recipients = {
                uid for chat_id, uid, joined_at in member_rows
                if chat_id == m.chat_id and uid != m.sender_id and joined_at <= m.timestamp
            }
            sender = {m.sender_id}
            sets[m.id] = (recipients, delivered[m.id] - sender, read[m.id] - sender)
        return sets

    async def get_aggregate_status(self, message_id: int) -> str:
        return (await self.get_status_summary(message_id))["status"]

    async def get_aggregate_statuses(self, messages: Iterable[Message]) -> Dict[int, str]:
        async with self.session_factory() as db:
            sets = await self._recipient_sets(db, messages)
        return {mid: derive_status(*s) for mid, s in sets.items()}

    async def get_status_summary(self, message_id: int) -> dict:
        message = await self._load_message(message_id)
        async with self.session_factory() as db:
            recipients, delivered, read = (await self._recipient_sets(db, [message]))[message.id]
        return {
            "message_id": message.id,
            "chat_id": message.chat_id,
            "sender_id": message.sender_id,
            "status": derive_status(recipients, delivered, read),
            "recipients": len(recipients | delivered | read),
            "delivered": len(delivered | read),
            "read": len(read),
        }

    async def get_unread_count(self, user_id: int, chat_id: int) -> int:
        """Messages by others in the chat that have no read receipt from user_id."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count(Message.id)).where(
                    Message.chat_id == chat_id,
                    Message.sender_id != user_id,
                    ~exists().where(and_(ReadReceipt.message_id == Message.id, ReadReceipt.user_id == user_id)),
                )
            )
            return result.scalar_one()

    async def get_unread_counts(self, user_id: int) -> Dict[int, int]:
        """chat_id -> unread count for every chat the user belongs to (0 included)."""
        async with self.session_factory() as db:
            chats = await db.execute(select(ChatMember.chat_id).where(ChatMember.user_id == user_id))
            counts = {chat_id: 0 for chat_id in chats.scalars().all()}
            if not counts:
                return counts

            result = await db.execute(
                select(Message.chat_id, func.count(Message.id))
                .where(
                    Message.chat_id.in_(list(counts)),
                    Message.sender_id != user_id,
                    ~exists().where(and_(ReadReceipt.message_id == Message.id, ReadReceipt.user_id == user_id)),
                )
                .group_by(Message.chat_id)
            )
            for chat_id, count in result.all():
                counts[chat_id] = count
        return counts

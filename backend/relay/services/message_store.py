import logging
from typing import List, Optional

from sqlalchemy import select

from relay.core.config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from relay.core.errors import InvalidPayloadError, MessageNotFoundError
from relay.core.retry import with_store_retry
from relay.db.models.message import MESSAGE_TYPES, Message
from relay.services.membership_service import ChatMembershipIndex

logger = logging.getLogger(__name__)


def clamp_limit(limit: Optional[int]) -> int:
    if not limit:
        return DEFAULT_PAGE_SIZE
    return max(1, min(int(limit), MAX_PAGE_SIZE))


class MessageStore:
    """Durable, append-only per-chat message log."""

    def __init__(self, session_factory, membership: ChatMembershipIndex):
        self.session_factory = session_factory
        self.membership = membership

    async def append(self, chat_id: int, sender_id: int, content: str, type: str = "text") -> Message:
        """
        Inserts one message in a single transaction (all or nothing).
        Raises NotMemberError if the sender is not in the chat.
        """
        if content is None or not content.strip():
            raise InvalidPayloadError("Message content is required")
        if type not in MESSAGE_TYPES:
            raise InvalidPayloadError(f"Invalid message type: {type}", details={"allowed": list(MESSAGE_TYPES)})

        await self.membership.require_member(chat_id, sender_id)

        async def _insert() -> Message:
            async with self.session_factory() as db:
                message = Message(chat_id=chat_id, sender_id=sender_id, content=content, type=type)
                db.add(message)
                await db.commit()
                await db.refresh(message)
                return message

        message = await with_store_retry(_insert, label=f"append to chat {chat_id}")
        logger.debug(f"[MessageStore] message {message.id} appended to chat {chat_id} by {sender_id}")
        return message

    async def get(self, message_id: int) -> Message:
        async with self.session_factory() as db:
            message = await db.get(Message, message_id)
        if message is None:
            raise MessageNotFoundError(details={"messageId": message_id})
        return message

    async def list(
        self,
        chat_id: int,
        limit: Optional[int] = None,
        before: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Message]:
        """
        Newest-first page. `before` is a message id cursor (exclusive);
        `offset` is kept for the HTTP history endpoint.
        """
        stmt = select(Message).where(Message.chat_id == chat_id)
        if before is not None:
            stmt = stmt.where(Message.id < before)
        stmt = stmt.order_by(Message.id.desc()).limit(clamp_limit(limit))
        if offset:
            stmt = stmt.offset(max(int(offset), 0))

        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

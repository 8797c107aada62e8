from datetime import datetime
from typing import Literal, Optional

from pydantic import Field

from relay.schemas.base import CamelModel

MessageStatus = Literal["sent", "delivered", "read"]


class MessageRead(CamelModel):
    id: int
    chat_id: int
    sender_id: int
    content: str
    type: str
    timestamp: datetime
    status: MessageStatus = "sent"


class MessageCreate(CamelModel):
    content: str = Field(..., min_length=1)
    type: str = "text"


class MessageStatusUpdate(CamelModel):
    status: Literal["delivered", "read"]


class MessageStatusSummary(CamelModel):
    message_id: int
    status: MessageStatus
    recipients: int
    delivered: int
    read: int


class ReadUpTo(CamelModel):
    message_id: int


class UnreadCount(CamelModel):
    chat_id: int
    unread_count: int


class MessagePage(CamelModel):
    messages: list[MessageRead]
    limit: int
    offset: Optional[int] = None
    before: Optional[int] = None


class ReadUpToResult(CamelModel):
    message_ids: list[int]

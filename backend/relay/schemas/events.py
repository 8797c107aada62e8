"""Socket envelope and per-event payload models."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from relay.schemas.base import CamelModel


class InboundFrame(BaseModel):
    """Client -> Server: {"event": "send_message", "data": {...}}"""

    event: str
    data: Dict[str, Any] = {}


def outbound(event: str, data: Any) -> dict:
    """Server -> Client frame."""
    return {"event": event, "data": data}


class SendMessagePayload(CamelModel):
    chat_id: int
    content: str = Field(..., min_length=1)
    type: str = "text"


class ChatRoomPayload(CamelModel):
    chat_id: int


class MarkReadPayload(CamelModel):
    message_id: int
    chat_id: Optional[int] = None


class MarkDeliveredPayload(CamelModel):
    message_id: int


class AcknowledgePayload(CamelModel):
    # None acknowledges every unread notification
    notification_ids: Optional[List[int]] = None

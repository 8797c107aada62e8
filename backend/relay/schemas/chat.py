from datetime import datetime
from typing import List, Literal, Optional

from relay.schemas.base import CamelModel


class ChatCreate(CamelModel):
    type: Literal["private", "group"]
    name: Optional[str] = None
    member_ids: List[int] = []


class ChatRead(CamelModel):
    id: int
    type: str
    name: Optional[str] = None
    created_by: int
    created_at: datetime
    last_activity: datetime
    last_message_preview: Optional[str] = None


class ChatSummary(ChatRead):
    unread_count: int = 0


class MemberRead(CamelModel):
    user_id: int
    username: str
    full_name: Optional[str] = None
    role: str
    joined_at: datetime
    is_online: bool
    last_seen: Optional[datetime] = None


class MembersAdd(CamelModel):
    member_ids: List[int]


class MembersAdded(CamelModel):
    added_members: List[int]

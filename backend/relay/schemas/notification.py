from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from relay.db.models.notification import Notification
from relay.schemas.base import CamelModel

Priority = Literal["low", "normal", "medium", "high"]


class NotificationCreate(CamelModel):
    type: str = "new_message"
    title: str
    message: str
    data: Dict[str, Any] = {}
    priority: Priority = "normal"


class NotificationRead(CamelModel):
    id: int
    type: str
    title: str
    message: str
    data: Optional[Dict[str, Any]] = None
    priority: str
    is_read: bool
    created_at: datetime
    read_at: Optional[datetime] = None


class NotificationFilter(CamelModel):
    """
    Parameterised predicate object for notification queries.
    Every field is optional; unset fields add no clause.
    """

    type: Optional[str] = None
    is_read: Optional[bool] = None
    priority: Optional[Priority] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    older_than: Optional[datetime] = None

    def to_clauses(self) -> list:
        clauses = []
        if self.type is not None:
            clauses.append(Notification.type == self.type)
        if self.is_read is not None:
            clauses.append(Notification.is_read == self.is_read)
        if self.priority is not None:
            clauses.append(Notification.priority == self.priority)
        if self.start_date is not None:
            clauses.append(Notification.created_at >= self.start_date)
        if self.end_date is not None:
            clauses.append(Notification.created_at <= self.end_date)
        if self.older_than is not None:
            clauses.append(Notification.created_at < self.older_than)
        return clauses


class NotificationIds(CamelModel):
    notification_ids: List[int] = Field(..., min_length=1)


class NotificationCount(CamelModel):
    total_count: int
    unread_count: int


class NotificationPage(CamelModel):
    notifications: List[NotificationRead]
    count: int
    limit: int
    offset: int


class UpdatedCount(CamelModel):
    updated_count: int


class DeletedCount(CamelModel):
    deleted_count: int

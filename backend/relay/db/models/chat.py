from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from relay.db.database import Base, get_utc_now

CHAT_TYPES = ("private", "group")


class Chat(Base):
    __tablename__ = "chats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # private, group
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_by: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_utc_now)
    # eventually consistent, written after fan-out
    last_activity: Mapped[datetime] = mapped_column(DateTime, default=get_utc_now, index=True)
    last_message_preview: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class ChatMember(Base):
    __tablename__ = "chat_members"

    chat_id: Mapped[int] = mapped_column(Integer, ForeignKey("chats.id", ondelete="CASCADE"), primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True)
    role: Mapped[str] = mapped_column(String(20), default="member", nullable=False)  # member, admin
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=get_utc_now, nullable=False)

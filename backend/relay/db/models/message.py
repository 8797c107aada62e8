from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from relay.db.database import Base, get_utc_now

MESSAGE_TYPES = ("text", "image", "video", "audio", "file")


class Message(Base):
    """
    Append-only. The sender-facing status is derived from the receipt tables.
    """
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    chat_id: Mapped[int] = mapped_column(Integer, ForeignKey("chats.id", ondelete="CASCADE"), nullable=False)
    sender_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(20), default="text", nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=get_utc_now, nullable=False)

    __table_args__ = (
        Index("ix_messages_chat_id_id", "chat_id", "id"),
    )


class DeliveryReceipt(Base):
    __tablename__ = "message_deliveries"

    message_id: Mapped[int] = mapped_column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True)
    delivered_at: Mapped[datetime] = mapped_column(DateTime, default=get_utc_now, nullable=False)


class ReadReceipt(Base):
    __tablename__ = "message_reads"

    message_id: Mapped[int] = mapped_column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True)
    read_at: Mapped[datetime] = mapped_column(DateTime, default=get_utc_now, nullable=False)

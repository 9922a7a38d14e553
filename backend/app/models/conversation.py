"""Conversation ORM model."""

from datetime import datetime

from sqlalchemy import Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, CreatedAtMixin, IdMixin, UpdatedAtMixin
from app.models.timestamp_type import UtcDateTime, utcnow


class Conversation(Base, IdMixin, CreatedAtMixin, UpdatedAtMixin):
    """Durable thread of messages among a fixed set of participants."""

    __tablename__ = "conversations"
    __table_args__ = (Index("ix_conversations_last_message_at_id", "last_message_at", "id"),)

    last_message_at: Mapped[datetime] = mapped_column(UtcDateTime(), default=utcnow, nullable=False)
    last_message_preview: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_group: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

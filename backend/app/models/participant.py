"""Conversation participant ORM model."""

from datetime import datetime

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base
from app.models.timestamp_type import UtcDateTime, utcnow


class ConversationParticipant(Base):
    """Membership and read-state record linking a user to a conversation."""

    __tablename__ = "conversation_participants"

    conversation_id: Mapped[str] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("profiles.id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    )
    joined_at: Mapped[datetime] = mapped_column(UtcDateTime(), default=utcnow, nullable=False)
    last_read_at: Mapped[datetime | None] = mapped_column(UtcDateTime(), nullable=True)

"""SQLAlchemy metadata registry import for Alembic."""

from app.models import Conversation, ConversationParticipant, Message, UserProfile
from app.models.base import Base

__all__ = ["Base", "Conversation", "ConversationParticipant", "Message", "UserProfile"]

"""ORM models package exports."""

from app.models.conversation import Conversation
from app.models.message import Message
from app.models.participant import ConversationParticipant
from app.models.profile import UserProfile

__all__ = [
    "Conversation",
    "ConversationParticipant",
    "Message",
    "UserProfile",
]

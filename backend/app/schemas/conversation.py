"""Conversation, participant and unread schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ChatUserRead(BaseModel):
    """Denormalized user display fields."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    first_name: str
    last_name: str
    role: str
    avatar_url: str | None = None
    display_name: str


class ParticipantRead(BaseModel):
    """Participant row joined with its profile."""

    conversation_id: str
    user_id: str
    joined_at: datetime
    last_read_at: datetime | None
    user: ChatUserRead | None = None


class ConversationSummary(BaseModel):
    """Aggregate-query row: conversation, derived unread count and participants."""

    id: str
    created_at: datetime
    updated_at: datetime
    last_message_at: datetime
    last_message_preview: str | None
    is_group: bool
    name: str | None
    unread_count: int
    participants: list[ParticipantRead]


class ConversationsListResponse(BaseModel):
    """Paginated aggregate-query payload."""

    items: list[ConversationSummary]
    limit: int
    offset: int


class ConversationCreate(BaseModel):
    """Create a conversation with the caller plus the listed users."""

    participant_ids: list[str] = Field(min_length=1)
    name: str | None = None
    is_group: bool = False


class MarkReadRequest(BaseModel):
    """Optional explicit watermark; defaults to server time."""

    at: datetime | None = None


class MarkReadResult(BaseModel):
    """Outcome of a read-receipt update."""

    conversation_id: str
    user_id: str
    last_read_at: datetime
    watermark_advanced: bool
    messages_marked: int


class UnreadCountRead(BaseModel):
    """Total unread count with per-conversation breakdown."""

    total_unread: int
    conversations: dict[str, int]

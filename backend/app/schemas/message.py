"""Message request/response schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

MessageType = Literal["text", "image", "audio", "file"]


class MessageCreate(BaseModel):
    """Send-path payload for one message."""

    content: str = Field(min_length=1)
    type: MessageType = "text"
    media_url: str | None = None
    reply_to_id: str | None = None


class MessageRead(BaseModel):
    """Serialized message."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    sender_id: str
    content: str
    type: str
    media_url: str | None
    reply_to_id: str | None
    created_at: datetime
    updated_at: datetime
    is_deleted: bool
    delivered_at: datetime | None
    read_at: datetime | None


class MessageDeleteResult(BaseModel):
    """Soft delete acknowledgement."""

    id: str
    deleted: bool

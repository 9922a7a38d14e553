"""Unread aggregation over gateway output."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from sqlalchemy.orm import Session

from app.models.timestamp_type import as_utc
from app.schemas.conversation import ConversationSummary, UnreadCountRead
from app.services.gateway import list_conversations
from app.services.identity import RequestProfileCache


class MessageLike(Protocol):
    sender_id: str
    created_at: datetime
    is_deleted: bool


@dataclass(frozen=True)
class UnreadSnapshot:
    """Total unread count plus the per-conversation breakdown it was summed from."""

    total_unread: int = 0
    conversations: Mapping[str, int] = field(default_factory=dict)

    def unread_for(self, conversation_id: str) -> int:
        return self.conversations.get(conversation_id, 0)

    def has_unread(self, conversation_id: str) -> bool:
        return self.unread_for(conversation_id) > 0

    @property
    def unread_flags(self) -> dict[str, bool]:
        return {conversation_id: count > 0 for conversation_id, count in self.conversations.items()}

    def to_read_model(self) -> UnreadCountRead:
        return UnreadCountRead(total_unread=self.total_unread, conversations=dict(self.conversations))


def is_unread(message: MessageLike, *, user_id: str, last_read_at: datetime | None) -> bool:
    """Whether ``message`` counts as unread for ``user_id`` at the given watermark."""

    if message.is_deleted or message.sender_id == user_id:
        return False
    if last_read_at is None:
        return True
    return as_utc(message.created_at) > as_utc(last_read_at)


def count_unread(messages: Iterable[MessageLike], *, user_id: str, last_read_at: datetime | None) -> int:
    return sum(1 for message in messages if is_unread(message, user_id=user_id, last_read_at=last_read_at))


def summarize_unread(conversations: Sequence[ConversationSummary]) -> UnreadSnapshot:
    """Fold aggregate-query rows into one snapshot."""

    per_conversation = {item.id: int(item.unread_count) for item in conversations}
    return UnreadSnapshot(total_unread=sum(per_conversation.values()), conversations=per_conversation)


def compute_unread_snapshot(
    db: Session,
    user_id: str | None,
    *,
    cache: RequestProfileCache | None = None,
) -> UnreadSnapshot:
    """Recompute unread state from the store; the only path that derives unread truth."""

    listing = list_conversations(db, user_id, limit=None, cache=cache)
    return summarize_unread(listing.items)


def get_unread_count(
    db: Session,
    user_id: str | None,
    *,
    cache: RequestProfileCache | None = None,
) -> UnreadCountRead:
    return compute_unread_snapshot(db, user_id, cache=cache).to_read_model()

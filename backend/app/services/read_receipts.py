"""Read-receipt tracking: per-participant ``last_read_at`` watermarks."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, literal, or_, select, update
from sqlalchemy.orm import Session

from app.models.message import Message
from app.models.participant import ConversationParticipant
from app.models.timestamp_type import UtcDateTime, as_utc, utcnow
from app.schemas.conversation import MarkReadResult
from app.services.gateway import ensure_participant, store_guard
from app.services.identity import RequestProfileCache, require_user

logger = logging.getLogger(__name__)


def clamp_read_at(at: datetime | None, now: datetime) -> datetime:
    """Receipts default to ``now`` and never point into the future."""

    if at is None:
        return now
    return min(as_utc(at), now)


def mark_read(
    db: Session,
    conversation_id: str,
    user_id: str | None,
    *,
    at: datetime | None = None,
    now: datetime | None = None,
    cache: RequestProfileCache | None = None,
) -> MarkReadResult:
    """Advance the caller's watermark to ``max(current, at)``.

    The watermark moves with a conditional UPDATE so concurrent calls (two
    tabs, say) can only ever raise it. Messages from other senders at or
    before the new watermark get their ``read_at`` receipt stamped.
    """

    current_time = as_utc(now) if now is not None else utcnow()
    read_at = clamp_read_at(at, current_time)
    stamp = literal(read_at, type_=UtcDateTime())

    with store_guard(db, "mark_read"):
        require_user(db, user_id, cache)
        ensure_participant(db, conversation_id, user_id)

        advanced = db.execute(
            update(ConversationParticipant)
            .where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id == user_id,
                or_(
                    ConversationParticipant.last_read_at.is_(None),
                    ConversationParticipant.last_read_at < read_at,
                ),
            )
            .values(last_read_at=read_at)
            .execution_options(synchronize_session=False)
        ).rowcount
        marked = db.execute(
            update(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.sender_id != user_id,
                Message.is_deleted.is_(False),
                Message.read_at.is_(None),
                Message.created_at <= read_at,
            )
            .values(read_at=stamp, delivered_at=func.coalesce(Message.delivered_at, stamp))
            .execution_options(synchronize_session=False)
        ).rowcount
        db.commit()

        watermark = db.scalar(
            select(ConversationParticipant.last_read_at).where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id == user_id,
            )
        )

    logger.info(
        "messaging.mark_read conversation_id=%s user_id=%s advanced=%s messages_marked=%d",
        conversation_id,
        user_id,
        bool(advanced),
        marked,
    )
    return MarkReadResult(
        conversation_id=conversation_id,
        user_id=user_id,
        last_read_at=watermark,
        watermark_advanced=bool(advanced),
        messages_marked=int(marked or 0),
    )

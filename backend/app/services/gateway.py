"""Persistence gateway for conversations, participants and messages.

Every read and write of messaging rows goes through this module. The
conversation list is served by one aggregate statement that returns each
conversation with its derived unread count and its participants, so callers
always see a single consistent snapshot.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session, aliased

from app.config import get_settings
from app.models.conversation import Conversation
from app.models.message import Message
from app.models.participant import ConversationParticipant
from app.models.profile import UserProfile
from app.models.timestamp_type import as_utc, utcnow
from app.schemas.conversation import (
    ChatUserRead,
    ConversationCreate,
    ConversationsListResponse,
    ConversationSummary,
    ParticipantRead,
)
from app.schemas.message import MessageCreate
from app.services.errors import Forbidden, NotFound, TransientStoreError
from app.services.identity import RequestProfileCache, require_user

logger = logging.getLogger(__name__)


@contextmanager
def store_guard(db: Session, operation: str) -> Iterator[None]:
    """Translate connectivity failures into ``TransientStoreError``."""

    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        db.rollback()
        logger.warning("messaging.store_unavailable operation=%s error=%s", operation, exc)
        raise TransientStoreError(f"{operation} failed: store unavailable") from exc


def unread_criteria(participant) -> list:
    """SQL predicate for messages unread by ``participant`` (an entity or alias)."""

    return [
        Message.conversation_id == participant.conversation_id,
        Message.sender_id != participant.user_id,
        Message.is_deleted.is_(False),
        or_(participant.last_read_at.is_(None), Message.created_at > participant.last_read_at),
    ]


def list_conversations(
    db: Session,
    user_id: str | None,
    *,
    limit: int | None = None,
    offset: int = 0,
    cache: RequestProfileCache | None = None,
) -> ConversationsListResponse:
    """Return the user's conversations by latest activity with unread counts.

    ``limit=None`` returns every conversation the user participates in.
    """

    with store_guard(db, "list_conversations"):
        require_user(db, user_id, cache)

        me = aliased(ConversationParticipant)
        unread_count = select(func.count(Message.id)).where(*unread_criteria(me)).correlate(me).scalar_subquery()
        page = (
            select(
                Conversation.id.label("conversation_id"),
                unread_count.label("unread_count"),
            )
            .join(me, me.conversation_id == Conversation.id)
            .where(me.user_id == user_id)
            .order_by(Conversation.last_message_at.desc(), Conversation.id.desc())
            .limit(limit)
            .offset(offset)
            .subquery()
        )
        member = aliased(ConversationParticipant)
        stmt = (
            select(Conversation, page.c.unread_count, member, UserProfile)
            .join(page, page.c.conversation_id == Conversation.id)
            .join(member, member.conversation_id == Conversation.id)
            .outerjoin(UserProfile, UserProfile.id == member.user_id)
            .order_by(
                Conversation.last_message_at.desc(),
                Conversation.id.desc(),
                member.joined_at.asc(),
                member.user_id.asc(),
            )
        )
        rows = db.execute(stmt).all()

    grouped: dict[str, tuple[Conversation, int, list[ParticipantRead]]] = {}
    for conversation, unread, participant, profile in rows:
        entry = grouped.setdefault(conversation.id, (conversation, int(unread or 0), []))
        entry[2].append(_participant_read(participant, profile))

    items = [
        ConversationSummary(
            id=conversation.id,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            last_message_at=conversation.last_message_at,
            last_message_preview=conversation.last_message_preview,
            is_group=conversation.is_group,
            name=conversation.name,
            unread_count=unread,
            participants=participants,
        )
        for conversation, unread, participants in grouped.values()
    ]
    return ConversationsListResponse(items=items, limit=limit if limit is not None else len(items), offset=offset)


def get_participants(
    db: Session,
    conversation_id: str,
    requesting_user_id: str | None,
    *,
    cache: RequestProfileCache | None = None,
) -> list[ParticipantRead]:
    """Return conversation members; the caller must be one of them."""

    with store_guard(db, "get_participants"):
        require_user(db, requesting_user_id, cache)
        ensure_participant(db, conversation_id, requesting_user_id)
        rows = db.execute(
            select(ConversationParticipant, UserProfile)
            .outerjoin(UserProfile, UserProfile.id == ConversationParticipant.user_id)
            .where(ConversationParticipant.conversation_id == conversation_id)
            .order_by(ConversationParticipant.joined_at.asc(), ConversationParticipant.user_id.asc())
        ).all()
    return [_participant_read(participant, profile) for participant, profile in rows]


def ensure_participant(db: Session, conversation_id: str, user_id: str) -> ConversationParticipant:
    """Return the membership row or raise ``NotFound``/``Forbidden``."""

    if db.get(Conversation, conversation_id) is None:
        raise NotFound("Conversation not found")
    participant = db.get(ConversationParticipant, (conversation_id, user_id))
    if participant is None:
        raise Forbidden("Not a participant of this conversation")
    return participant


def participant_ids(db: Session, conversation_id: str) -> list[str]:
    """User ids entitled to change notifications for a conversation."""

    with store_guard(db, "participant_ids"):
        stmt = (
            select(ConversationParticipant.user_id)
            .where(ConversationParticipant.conversation_id == conversation_id)
            .order_by(ConversationParticipant.user_id.asc())
        )
        return list(db.scalars(stmt).all())


def create_conversation(
    db: Session,
    creator_id: str | None,
    payload: ConversationCreate,
    *,
    cache: RequestProfileCache | None = None,
) -> Conversation:
    """Create a conversation, reusing an existing direct chat between two users."""

    with store_guard(db, "create_conversation"):
        require_user(db, creator_id, cache)
        member_ids = sorted({creator_id, *(uid.strip() for uid in payload.participant_ids if uid.strip())})
        if len(member_ids) < 2:
            raise ValueError("A conversation needs at least two distinct participants.")
        known = set(db.scalars(select(UserProfile.id).where(UserProfile.id.in_(member_ids))).all())
        missing = [uid for uid in member_ids if uid not in known]
        if missing:
            raise NotFound(f"Unknown users: {', '.join(missing)}")

        is_group = payload.is_group or len(member_ids) > 2
        if not is_group:
            existing = _find_direct_conversation(db, member_ids[0], member_ids[1])
            if existing is not None:
                return existing

        now = utcnow()
        conversation = Conversation(
            created_at=now,
            updated_at=now,
            last_message_at=now,
            is_group=is_group,
            name=(payload.name or "").strip() or None,
        )
        db.add(conversation)
        db.flush()
        for uid in member_ids:
            db.add(ConversationParticipant(conversation_id=conversation.id, user_id=uid, joined_at=now))
        db.commit()
        db.refresh(conversation)
    logger.info(
        "messaging.conversation_created conversation_id=%s participants=%d is_group=%s",
        conversation.id,
        len(member_ids),
        is_group,
    )
    return conversation


def send_message(
    db: Session,
    conversation_id: str,
    sender_id: str | None,
    payload: MessageCreate,
    *,
    now: datetime | None = None,
    cache: RequestProfileCache | None = None,
) -> Message:
    """Persist a message and advance the conversation's activity columns."""

    with store_guard(db, "send_message"):
        require_user(db, sender_id, cache)
        ensure_participant(db, conversation_id, sender_id)
        if payload.reply_to_id is not None:
            replied = db.get(Message, payload.reply_to_id)
            if replied is None or replied.conversation_id != conversation_id:
                raise NotFound("Replied message not found")

        created_at = as_utc(now) if now is not None else utcnow()
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=payload.content,
            type=payload.type,
            media_url=payload.media_url,
            reply_to_id=payload.reply_to_id,
            created_at=created_at,
            updated_at=created_at,
        )
        db.add(message)
        db.flush()
        # last_message_at only advances, even when sends commit out of order.
        db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id, Conversation.last_message_at <= created_at)
            .values(
                last_message_at=created_at,
                last_message_preview=_preview(payload.content),
                updated_at=created_at,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(message)
    return message


def list_messages(
    db: Session,
    conversation_id: str,
    user_id: str | None,
    *,
    cache: RequestProfileCache | None = None,
) -> list[Message]:
    """Return visible messages ordered by creation time, ties by id."""

    with store_guard(db, "list_messages"):
        require_user(db, user_id, cache)
        ensure_participant(db, conversation_id, user_id)
        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id, Message.is_deleted.is_(False))
            .order_by(Message.created_at.asc(), Message.id.asc())
        )
        return list(db.scalars(stmt).all())


def delete_message(
    db: Session,
    message_id: str,
    user_id: str | None,
    *,
    cache: RequestProfileCache | None = None,
) -> Message:
    """Soft delete a message authored by the caller."""

    with store_guard(db, "delete_message"):
        require_user(db, user_id, cache)
        message = db.get(Message, message_id)
        if message is None:
            raise NotFound("Message not found")
        ensure_participant(db, message.conversation_id, user_id)
        if message.sender_id != user_id:
            raise Forbidden("Only the sender can delete a message")
        if not message.is_deleted:
            message.is_deleted = True
            db.flush()
            _refresh_conversation_preview(db, message.conversation_id)
            db.commit()
            db.refresh(message)
    return message


def get_conversation_unread_count(
    db: Session,
    conversation_id: str,
    user_id: str | None,
    *,
    cache: RequestProfileCache | None = None,
) -> int:
    """Unread count for one conversation, using the aggregate query's predicate."""

    with store_guard(db, "get_conversation_unread_count"):
        require_user(db, user_id, cache)
        ensure_participant(db, conversation_id, user_id)
        me = aliased(ConversationParticipant)
        stmt = (
            select(func.count(Message.id))
            .select_from(me)
            .join(Message, Message.conversation_id == me.conversation_id)
            .where(me.conversation_id == conversation_id, me.user_id == user_id, *unread_criteria(me))
        )
        return int(db.scalar(stmt) or 0)


def _refresh_conversation_preview(db: Session, conversation_id: str) -> None:
    conversation = db.get(Conversation, conversation_id)
    latest = db.scalars(
        select(Message)
        .where(Message.conversation_id == conversation_id, Message.is_deleted.is_(False))
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(1)
    ).first()
    if latest is None:
        conversation.last_message_at = conversation.created_at
        conversation.last_message_preview = None
    else:
        conversation.last_message_at = latest.created_at
        conversation.last_message_preview = _preview(latest.content)
    conversation.updated_at = utcnow()


def _find_direct_conversation(db: Session, user_a: str, user_b: str) -> Conversation | None:
    member_a = aliased(ConversationParticipant)
    member_b = aliased(ConversationParticipant)
    member_count = (
        select(func.count())
        .where(ConversationParticipant.conversation_id == Conversation.id)
        .correlate(Conversation)
        .scalar_subquery()
    )
    stmt = (
        select(Conversation)
        .join(member_a, and_(member_a.conversation_id == Conversation.id, member_a.user_id == user_a))
        .join(member_b, and_(member_b.conversation_id == Conversation.id, member_b.user_id == user_b))
        .where(Conversation.is_group.is_(False), member_count == 2)
        .order_by(Conversation.created_at.asc(), Conversation.id.asc())
        .limit(1)
    )
    return db.scalars(stmt).first()


def _preview(content: str) -> str:
    limit = get_settings().message_preview_length
    text = " ".join(content.split())
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def _participant_read(participant: ConversationParticipant, profile: UserProfile | None) -> ParticipantRead:
    return ParticipantRead(
        conversation_id=participant.conversation_id,
        user_id=participant.user_id,
        joined_at=participant.joined_at,
        last_read_at=participant.last_read_at,
        user=ChatUserRead.model_validate(profile) if profile is not None else None,
    )

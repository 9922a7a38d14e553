"""Conversation list, membership and read-receipt routes."""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Path, Query
from sqlalchemy.orm import Session

from app.config import get_settings
from app.db.dependencies import get_db
from app.dependencies import get_current_user_id, get_profile_cache
from app.routers.errors import http_error
from app.schemas.common import ERROR_RESPONSES, ApiResponse
from app.schemas.conversation import (
    ConversationCreate,
    ConversationsListResponse,
    ConversationSummary,
    MarkReadRequest,
    MarkReadResult,
    ParticipantRead,
    UnreadCountRead,
)
from app.services.change_feed import ChangeBus, get_change_bus, publish_change, watermark_updated
from app.services.errors import MessagingError
from app.services.gateway import (
    create_conversation,
    get_conversation_unread_count,
    get_participants,
    list_conversations,
    participant_ids,
)
from app.services.identity import RequestProfileCache
from app.services.read_receipts import mark_read
from app.services.unread import get_unread_count

router = APIRouter(responses=ERROR_RESPONSES)


@router.get("/conversations", response_model=ApiResponse[ConversationsListResponse])
def get_conversations(
    limit: int | None = Query(default=None, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user_id: str | None = Depends(get_current_user_id),
    cache: RequestProfileCache = Depends(get_profile_cache),
    db: Session = Depends(get_db),
) -> ApiResponse[ConversationsListResponse]:
    """List the caller's conversations by latest activity, with unread counts."""

    try:
        payload = list_conversations(
            db,
            user_id,
            limit=limit or get_settings().conversation_page_limit,
            offset=offset,
            cache=cache,
        )
    except MessagingError as exc:
        raise http_error(exc) from exc
    return ApiResponse(data=payload)


@router.post("/conversations", response_model=ApiResponse[ConversationSummary], status_code=201)
def post_conversation(
    payload: ConversationCreate,
    user_id: str | None = Depends(get_current_user_id),
    cache: RequestProfileCache = Depends(get_profile_cache),
    db: Session = Depends(get_db),
) -> ApiResponse[ConversationSummary]:
    """Create a conversation (or return the existing direct chat)."""

    try:
        conversation = create_conversation(db, user_id, payload, cache=cache)
        participants = get_participants(db, conversation.id, user_id, cache=cache)
        unread = get_conversation_unread_count(db, conversation.id, user_id, cache=cache)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except MessagingError as exc:
        raise http_error(exc) from exc
    return ApiResponse(
        data=ConversationSummary(
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
    )


@router.get(
    "/conversations/{conversation_id}/participants",
    response_model=ApiResponse[list[ParticipantRead]],
)
def get_conversation_participants(
    conversation_id: str = Path(..., min_length=1),
    user_id: str | None = Depends(get_current_user_id),
    cache: RequestProfileCache = Depends(get_profile_cache),
    db: Session = Depends(get_db),
) -> ApiResponse[list[ParticipantRead]]:
    """Who is in this chat; only visible to its participants."""

    try:
        participants = get_participants(db, conversation_id, user_id, cache=cache)
    except MessagingError as exc:
        raise http_error(exc) from exc
    return ApiResponse(data=participants)


@router.post("/conversations/{conversation_id}/read", response_model=ApiResponse[MarkReadResult])
def post_mark_read(
    background_tasks: BackgroundTasks,
    payload: MarkReadRequest | None = None,
    conversation_id: str = Path(..., min_length=1),
    user_id: str | None = Depends(get_current_user_id),
    cache: RequestProfileCache = Depends(get_profile_cache),
    db: Session = Depends(get_db),
    bus: ChangeBus = Depends(get_change_bus),
) -> ApiResponse[MarkReadResult]:
    """Advance the caller's read watermark for a conversation."""

    try:
        result = mark_read(
            db,
            conversation_id,
            user_id,
            at=payload.at if payload is not None else None,
            cache=cache,
        )
        recipients = participant_ids(db, conversation_id)
    except MessagingError as exc:
        raise http_error(exc) from exc

    if result.watermark_advanced or result.messages_marked:
        background_tasks.add_task(
            publish_change,
            bus,
            watermark_updated(conversation_id, result.user_id, result.last_read_at),
            recipients,
        )
    return ApiResponse(data=result)


@router.get("/conversations/{conversation_id}/unread-count", response_model=ApiResponse[int])
def get_conversation_unread(
    conversation_id: str = Path(..., min_length=1),
    user_id: str | None = Depends(get_current_user_id),
    cache: RequestProfileCache = Depends(get_profile_cache),
    db: Session = Depends(get_db),
) -> ApiResponse[int]:
    """Unread count for a single conversation."""

    try:
        count = get_conversation_unread_count(db, conversation_id, user_id, cache=cache)
    except MessagingError as exc:
        raise http_error(exc) from exc
    return ApiResponse(data=count)


@router.get("/unread-count", response_model=ApiResponse[UnreadCountRead])
def get_total_unread(
    user_id: str | None = Depends(get_current_user_id),
    cache: RequestProfileCache = Depends(get_profile_cache),
    db: Session = Depends(get_db),
) -> ApiResponse[UnreadCountRead]:
    """Total unread count across every conversation of the caller."""

    try:
        payload = get_unread_count(db, user_id, cache=cache)
    except MessagingError as exc:
        raise http_error(exc) from exc
    return ApiResponse(data=payload)

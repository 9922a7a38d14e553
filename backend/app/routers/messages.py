"""Message send, listing and soft-delete routes."""

from fastapi import APIRouter, BackgroundTasks, Depends, Path
from sqlalchemy.orm import Session

from app.db.dependencies import get_db
from app.dependencies import get_current_user_id, get_profile_cache
from app.routers.errors import http_error
from app.schemas.common import ERROR_RESPONSES, ApiResponse
from app.schemas.message import MessageCreate, MessageDeleteResult, MessageRead
from app.services.change_feed import ChangeBus, get_change_bus, message_inserted, publish_change
from app.services.errors import MessagingError
from app.services.gateway import delete_message, list_messages, participant_ids, send_message
from app.services.identity import RequestProfileCache

router = APIRouter(responses=ERROR_RESPONSES)


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=ApiResponse[MessageRead],
    status_code=201,
)
def post_message(
    payload: MessageCreate,
    background_tasks: BackgroundTasks,
    conversation_id: str = Path(..., min_length=1),
    user_id: str | None = Depends(get_current_user_id),
    cache: RequestProfileCache = Depends(get_profile_cache),
    db: Session = Depends(get_db),
    bus: ChangeBus = Depends(get_change_bus),
) -> ApiResponse[MessageRead]:
    """Store a message and notify every participant's channel."""

    try:
        message = send_message(db, conversation_id, user_id, payload, cache=cache)
        recipients = participant_ids(db, conversation_id)
    except MessagingError as exc:
        raise http_error(exc) from exc

    background_tasks.add_task(
        publish_change,
        bus,
        message_inserted(conversation_id, message.sender_id, message.created_at),
        recipients,
    )
    return ApiResponse(data=MessageRead.model_validate(message))


@router.get("/conversations/{conversation_id}/messages", response_model=ApiResponse[list[MessageRead]])
def get_messages(
    conversation_id: str = Path(..., min_length=1),
    user_id: str | None = Depends(get_current_user_id),
    cache: RequestProfileCache = Depends(get_profile_cache),
    db: Session = Depends(get_db),
) -> ApiResponse[list[MessageRead]]:
    """List visible messages of a conversation."""

    try:
        records = list_messages(db, conversation_id, user_id, cache=cache)
    except MessagingError as exc:
        raise http_error(exc) from exc
    return ApiResponse(data=[MessageRead.model_validate(message) for message in records])


@router.delete("/messages/{message_id}", response_model=ApiResponse[MessageDeleteResult])
def remove_message(
    message_id: str = Path(..., min_length=1),
    user_id: str | None = Depends(get_current_user_id),
    cache: RequestProfileCache = Depends(get_profile_cache),
    db: Session = Depends(get_db),
) -> ApiResponse[MessageDeleteResult]:
    """Soft delete one of the caller's own messages."""

    try:
        message = delete_message(db, message_id, user_id, cache=cache)
    except MessagingError as exc:
        raise http_error(exc) from exc
    return ApiResponse(data=MessageDeleteResult(id=message.id, deleted=message.is_deleted))

"""Shared API envelopes."""

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Consistent JSON envelope for API responses."""

    data: T


class ErrorResponse(BaseModel):
    """Body FastAPI renders for ``HTTPException``."""

    detail: str


ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing or unknown identity"},
    403: {"model": ErrorResponse, "description": "Caller is not a participant"},
    404: {"model": ErrorResponse, "description": "Conversation or message not found"},
    503: {"model": ErrorResponse, "description": "Store temporarily unavailable"},
}

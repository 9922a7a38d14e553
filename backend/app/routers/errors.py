"""Map messaging errors onto HTTP responses."""

from fastapi import HTTPException

from app.services.errors import (
    Forbidden,
    MessagingError,
    NotFound,
    TransientStoreError,
    Unauthorized,
)

_STATUS_BY_ERROR: dict[type[MessagingError], int] = {
    Unauthorized: 401,
    Forbidden: 403,
    NotFound: 404,
    TransientStoreError: 503,
}


def http_error(exc: MessagingError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))

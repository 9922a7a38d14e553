"""Request-scoped identity dependencies."""

from fastapi import Header, Request

from app.services.identity import RequestProfileCache


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str | None:
    """Authenticated user id forwarded by the portal's auth layer."""

    return x_user_id


def get_profile_cache(request: Request) -> RequestProfileCache:
    """One profile cache per request, shared by every dependency that asks."""

    cache = getattr(request.state, "profile_cache", None)
    if cache is None:
        cache = RequestProfileCache()
        request.state.profile_cache = cache
    return cache

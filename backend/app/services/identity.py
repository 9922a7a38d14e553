"""Authenticated identity checks with a per-request profile cache."""

from __future__ import annotations

from sqlalchemy.orm import Session

from app.models.profile import UserProfile
from app.services.errors import Unauthorized


class RequestProfileCache:
    """Profiles loaded during one logical request, keyed by user id.

    The first lookup for a user hits the store; every later call site in the
    same request reuses the loaded row (including a miss).
    """

    def __init__(self) -> None:
        self._profiles: dict[str, UserProfile | None] = {}
        self.loads = 0

    def get(self, db: Session, user_id: str) -> UserProfile | None:
        if user_id not in self._profiles:
            self._profiles[user_id] = db.get(UserProfile, user_id)
            self.loads += 1
        return self._profiles[user_id]


def require_user(db: Session, user_id: str | None, cache: RequestProfileCache | None = None) -> UserProfile:
    """Return the caller's profile or raise ``Unauthorized``."""

    if user_id is None or not user_id.strip():
        raise Unauthorized("Authentication required.")
    profile = cache.get(db, user_id) if cache is not None else db.get(UserProfile, user_id)
    if profile is None:
        raise Unauthorized("Unknown user identity.")
    return profile

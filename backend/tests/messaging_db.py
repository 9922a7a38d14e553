"""Shared in-memory database fixtures for messaging tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine, delete
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.models.base import Base
from app.models.conversation import Conversation
from app.models.message import Message
from app.models.participant import ConversationParticipant
from app.models.profile import UserProfile

BASE_TIME = datetime(2026, 2, 1, 9, 0, tzinfo=timezone.utc)


class MessagingDatabaseMixin:
    """Creates one SQLite engine per test class and clean tables per test."""

    engine = None
    SessionLocal: sessionmaker[Session]

    @classmethod
    def create_database(cls) -> None:
        cls.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        cls.SessionLocal = sessionmaker(bind=cls.engine, autoflush=False, autocommit=False, future=True)
        Base.metadata.create_all(cls.engine)

    @classmethod
    def drop_database(cls) -> None:
        Base.metadata.drop_all(cls.engine)
        cls.engine.dispose()

    def reset_tables(self, db: Session) -> None:
        db.execute(delete(Message))
        db.execute(delete(ConversationParticipant))
        db.execute(delete(Conversation))
        db.execute(delete(UserProfile))
        db.commit()

    def add_user(self, db: Session, user_id: str, first_name: str = "") -> UserProfile:
        profile = UserProfile(
            id=user_id,
            email=f"{user_id}@example.org",
            first_name=first_name or user_id.title(),
            last_name="Tester",
            role="staff",
        )
        db.add(profile)
        db.commit()
        return profile

    def add_conversation(
        self,
        db: Session,
        *user_ids: str,
        created_at: datetime = BASE_TIME,
        is_group: bool = False,
        name: str | None = None,
    ) -> Conversation:
        conversation = Conversation(
            created_at=created_at,
            updated_at=created_at,
            last_message_at=created_at,
            is_group=is_group,
            name=name,
        )
        db.add(conversation)
        db.flush()
        for offset, user_id in enumerate(user_ids):
            db.add(
                ConversationParticipant(
                    conversation_id=conversation.id,
                    user_id=user_id,
                    joined_at=created_at + timedelta(seconds=offset),
                )
            )
        db.commit()
        return conversation

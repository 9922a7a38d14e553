"""Seed two demo users, a direct conversation and a few messages.

Usage (from repository root):
    python backend/scripts/seed_demo.py

Usage (from backend directory):
    python scripts/seed_demo.py
    # or
    python -m scripts.seed_demo
"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

from sqlalchemy import delete, select

# Make `app` imports work whether the script is run from repo root or backend/.
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from app.db.session import SessionLocal
from app.models.conversation import Conversation
from app.models.participant import ConversationParticipant
from app.models.profile import UserProfile
from app.schemas.conversation import ConversationCreate
from app.schemas.message import MessageCreate
from app.services.gateway import create_conversation, send_message
from app.services.unread import get_unread_count


DEMO_USERS = (
    ("demo-nurse", "nurse@example.org", "Nora", "Reyes", "nurse"),
    ("demo-doctor", "doctor@example.org", "Daniel", "Okafor", "doctor"),
)


def build_demo_messages() -> list[tuple[str, MessageCreate]]:
    """Return a deterministic sender/message exchange."""

    return [
        ("demo-nurse", MessageCreate(content="Morning vitals for bed 4 are in the chart.")),
        ("demo-doctor", MessageCreate(content="Thanks, I will review them before rounds.")),
        ("demo-nurse", MessageCreate(content="Patient asked about the tapering schedule.")),
    ]


def reset_demo_data(db) -> None:
    """Remove demo users and every conversation they are in."""

    user_ids = [user[0] for user in DEMO_USERS]
    member_of = select(ConversationParticipant.conversation_id).where(ConversationParticipant.user_id.in_(user_ids))
    db.execute(delete(Conversation).where(Conversation.id.in_(member_of)))
    db.execute(delete(UserProfile).where(UserProfile.id.in_(user_ids)))
    db.commit()


def parse_args() -> argparse.Namespace:
    """Parse script CLI arguments."""

    parser = argparse.ArgumentParser(description="Seed a demo direct conversation with unread messages.")
    parser.add_argument(
        "--no-reset",
        action="store_true",
        help="Do not delete existing demo records before seeding.",
    )
    return parser.parse_args()


def main() -> None:
    """Seed demo data and print a short summary."""

    args = parse_args()
    base = datetime.now(timezone.utc) - timedelta(minutes=10)

    with SessionLocal() as db:
        if not args.no_reset:
            reset_demo_data(db)
        for user_id, email, first_name, last_name, role in DEMO_USERS:
            if db.get(UserProfile, user_id) is None:
                db.add(UserProfile(id=user_id, email=email, first_name=first_name, last_name=last_name, role=role))
        db.commit()

        conversation = create_conversation(db, "demo-nurse", ConversationCreate(participant_ids=["demo-doctor"]))
        for idx, (sender_id, payload) in enumerate(build_demo_messages()):
            send_message(db, conversation.id, sender_id, payload, now=base + timedelta(minutes=idx))

        nurse_unread = get_unread_count(db, "demo-nurse")
        doctor_unread = get_unread_count(db, "demo-doctor")

    print("Seed complete")
    print(f"conversation_id={conversation.id}")
    print(f"demo-nurse total_unread={nurse_unread.total_unread}")
    print(f"demo-doctor total_unread={doctor_unread.total_unread}")
    print()
    print("Inspect:")
    print("  GET /conversations          (header X-User-Id: demo-doctor)")
    print("  GET /unread-count           (header X-User-Id: demo-doctor)")
    print(f"  POST /conversations/{conversation.id}/read")


if __name__ == "__main__":
    main()

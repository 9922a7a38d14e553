"""HTTP and WebSocket surface tests with dependency overrides."""

from __future__ import annotations

import asyncio
import unittest

from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.db.dependencies import get_db, get_session_factory
from app.main import app
from app.routers.realtime import queue_updates, snapshot_message
from app.services.change_feed import MESSAGE_INSERTED, WATERMARK_UPDATED, InMemoryChangeBus, get_change_bus, user_channel
from app.services.session import MessagingSession
from app.services.unread import UnreadSnapshot
from tests.messaging_db import MessagingDatabaseMixin


class MessagingApiTests(MessagingDatabaseMixin, unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.create_database()

    @classmethod
    def tearDownClass(cls) -> None:
        cls.drop_database()

    def setUp(self) -> None:
        self.db = self.SessionLocal()
        self.reset_tables(self.db)
        for user_id in ("alice", "bob", "carol"):
            self.add_user(self.db, user_id)
        self.conversation = self.add_conversation(self.db, "alice", "bob")
        self.conversation_id = self.conversation.id
        self.bus = InMemoryChangeBus()

        def override_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_db
        app.dependency_overrides[get_session_factory] = lambda: self.SessionLocal
        app.dependency_overrides[get_change_bus] = lambda: self.bus
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.db.close()

    def test_missing_or_unknown_identity_is_unauthorized(self) -> None:
        self.assertEqual(self.client.get("/conversations").status_code, 401)
        response = self.client.get("/unread-count", headers={"X-User-Id": "mallory"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["detail"], "Unknown user identity.")

    def test_participants_are_visible_to_members_only(self) -> None:
        ok = self.client.get(f"/conversations/{self.conversation_id}/participants", headers=self._as("bob"))
        forbidden = self.client.get(f"/conversations/{self.conversation_id}/participants", headers=self._as("carol"))
        missing = self.client.get("/conversations/nope/participants", headers=self._as("bob"))

        self.assertEqual(ok.status_code, 200)
        self.assertEqual({row["user_id"] for row in ok.json()["data"]}, {"alice", "bob"})
        self.assertEqual(forbidden.status_code, 403)
        self.assertEqual(missing.status_code, 404)

    def test_send_list_and_mark_read_flow_publishes_changes(self) -> None:
        sent = self.client.post(
            f"/conversations/{self.conversation_id}/messages",
            json={"content": "hello"},
            headers=self._as("alice"),
        )
        self.assertEqual(sent.status_code, 201)
        self.assertEqual(sent.json()["data"]["content"], "hello")

        listing = self.client.get("/conversations", headers=self._as("bob")).json()["data"]
        self.assertEqual(listing["limit"], 50)
        self.assertEqual(listing["items"][0]["unread_count"], 1)
        self.assertEqual(listing["items"][0]["last_message_preview"], "hello")

        total = self.client.get("/unread-count", headers=self._as("bob")).json()["data"]
        self.assertEqual(total, {"total_unread": 1, "conversations": {self.conversation_id: 1}})

        read = self.client.post(f"/conversations/{self.conversation_id}/read", headers=self._as("bob"))
        self.assertEqual(read.status_code, 200)
        self.assertTrue(read.json()["data"]["watermark_advanced"])
        self.assertEqual(read.json()["data"]["messages_marked"], 1)

        unread = self.client.get(f"/conversations/{self.conversation_id}/unread-count", headers=self._as("bob"))
        self.assertEqual(unread.json()["data"], 0)

        published = [(channel, event.kind) for channel, event in self.bus.published]
        self.assertEqual(
            published,
            [
                (user_channel("alice"), MESSAGE_INSERTED),
                (user_channel("bob"), MESSAGE_INSERTED),
                (user_channel("alice"), WATERMARK_UPDATED),
                (user_channel("bob"), WATERMARK_UPDATED),
            ],
        )

    def test_repeated_mark_read_does_not_republish(self) -> None:
        self.client.post(f"/conversations/{self.conversation_id}/read", headers=self._as("bob"))
        published = len(self.bus.published)

        self.client.post(
            f"/conversations/{self.conversation_id}/read",
            json={"at": "2020-01-01T00:00:00Z"},
            headers=self._as("bob"),
        )

        self.assertEqual(len(self.bus.published), published)

    def test_create_conversation_and_delete_message(self) -> None:
        created = self.client.post(
            "/conversations",
            json={"participant_ids": ["carol"]},
            headers=self._as("alice"),
        )
        self.assertEqual(created.status_code, 201)
        conversation_id = created.json()["data"]["id"]
        self.assertEqual(created.json()["data"]["unread_count"], 0)

        invalid = self.client.post("/conversations", json={"participant_ids": ["alice"]}, headers=self._as("alice"))
        self.assertEqual(invalid.status_code, 422)

        message_id = self.client.post(
            f"/conversations/{conversation_id}/messages",
            json={"content": "wrong chat"},
            headers=self._as("alice"),
        ).json()["data"]["id"]
        self.assertEqual(self.client.delete(f"/messages/{message_id}", headers=self._as("carol")).status_code, 403)

        deleted = self.client.delete(f"/messages/{message_id}", headers=self._as("alice"))
        self.assertEqual(deleted.json()["data"], {"id": message_id, "deleted": True})
        messages = self.client.get(f"/conversations/{conversation_id}/messages", headers=self._as("carol"))
        self.assertEqual(messages.json()["data"], [])

    def test_unread_socket_pushes_initial_snapshot(self) -> None:
        self.client.post(
            f"/conversations/{self.conversation_id}/messages",
            json={"content": "hello"},
            headers=self._as("alice"),
        )

        with self.client.websocket_connect("/ws/unread?user_id=bob") as websocket:
            payload = websocket.receive_json()

        self.assertEqual(payload["type"], "unread")
        self.assertEqual(payload["total_unread"], 1)
        self.assertEqual(payload["conversations"], {self.conversation_id: 1})

    def test_unread_socket_rejects_unknown_users(self) -> None:
        with self.assertRaises(WebSocketDisconnect) as ctx:
            with self.client.websocket_connect("/ws/unread?user_id=mallory"):
                pass

        self.assertEqual(ctx.exception.code, 4401)

    def _as(self, user_id: str) -> dict[str, str]:
        return {"X-User-Id": user_id}


class UnreadSocketQueueTests(unittest.TestCase):
    def test_backlogged_snapshots_keep_their_own_sequence(self) -> None:
        async def never_called() -> UnreadSnapshot:
            raise AssertionError("fetch should not run")

        session = MessagingSession("bob", never_called)
        updates: asyncio.Queue[tuple[int, UnreadSnapshot]] = asyncio.Queue()
        unsubscribe = queue_updates(session, updates)
        first = UnreadSnapshot(total_unread=1, conversations={"c1": 1})
        second = UnreadSnapshot(total_unread=2, conversations={"c1": 2})

        session.state.apply(1, first)
        session.state.apply(2, second)
        unsubscribe()
        session.state.apply(3, UnreadSnapshot())

        backlog = [updates.get_nowait() for _ in range(updates.qsize())]
        self.assertEqual(backlog, [(1, first), (2, second)])
        self.assertEqual(snapshot_message(*backlog[0])["sequence"], 1)


if __name__ == "__main__":
    unittest.main()

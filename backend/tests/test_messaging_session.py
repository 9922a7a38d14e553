"""End-to-end unread flow: gateway writes, change bus and client sessions."""

from __future__ import annotations

import asyncio
import unittest

from sqlalchemy.orm import Session

from app.config import Settings
from app.schemas.message import MessageCreate
from app.services.change_feed import (
    InMemoryChangeBus,
    message_inserted,
    publish_change,
    user_channel,
    watermark_updated,
)
from app.services.gateway import participant_ids, send_message
from app.services.read_receipts import mark_read
from app.services.session import MessagingSession, database_fetcher
from app.services.unread import UnreadSnapshot
from tests.async_helpers import eventually
from tests.messaging_db import MessagingDatabaseMixin


def _settings(**overrides) -> Settings:
    values = {
        "reconciliation_interval_seconds": 3600.0,
        "degraded_reconciliation_interval_seconds": 3600.0,
        "reconnect_initial_delay_seconds": 0.01,
        "reconnect_max_delay_seconds": 0.02,
    }
    values.update(overrides)
    return Settings(**values)


class MessagingSessionTests(MessagingDatabaseMixin, unittest.IsolatedAsyncioTestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.create_database()

    @classmethod
    def tearDownClass(cls) -> None:
        cls.drop_database()

    def setUp(self) -> None:
        self.db: Session = self.SessionLocal()
        self.reset_tables(self.db)
        self.add_user(self.db, "alice")
        self.add_user(self.db, "bob")
        self.conversation = self.add_conversation(self.db, "alice", "bob")
        self.bus = InMemoryChangeBus()
        self.fetch_calls = 0

    def tearDown(self) -> None:
        self.db.close()

    async def test_hello_then_mark_read_round_trip(self) -> None:
        async with self._session("alice") as alice, self._session("bob") as bob:
            await eventually(lambda: alice.bridge.is_subscribed and bob.bridge.is_subscribed)
            await eventually(lambda: not bob.state.is_loading)

            await self._send("alice", "hello")
            await eventually(lambda: bob.unread_count == 1)
            self.assertEqual(bob.snapshot.unread_for(self.conversation.id), 1)
            self.assertEqual(alice.unread_count, 0)

            result = mark_read(self.db, self.conversation.id, "bob")
            await publish_change(
                self.bus,
                watermark_updated(self.conversation.id, "bob", result.last_read_at),
                participant_ids(self.db, self.conversation.id),
            )
            await eventually(lambda: bob.unread_count == 0)
            self.assertFalse(bob.snapshot.has_unread(self.conversation.id))
            self.assertEqual(alice.unread_count, 0)

    async def test_offline_recipient_catches_up_on_reconnect(self) -> None:
        async with self._session("bob") as bob:
            await eventually(lambda: bob.bridge.is_subscribed and not bob.state.is_loading)

            with self.assertLogs("app.services.event_bridge", level="WARNING"):
                self.bus.available = False
                self.bus.drop_connections()
                await eventually(lambda: bob.is_degraded)

                await self._send("alice", "are you on shift?")
                await self._send("alice", "bed 4 needs a review")
                await asyncio.sleep(0.05)
                self.assertEqual(bob.unread_count, 0)

            self.bus.available = True
            await eventually(lambda: bob.bridge.is_subscribed)
            await eventually(lambda: bob.unread_count == 2)

    async def test_reconciliation_alone_keeps_state_fresh(self) -> None:
        settings = _settings(degraded_reconciliation_interval_seconds=0.02)
        async with self._session("bob", realtime=False, settings=settings) as bob:
            self.assertIsNone(bob.bridge)
            self.assertTrue(bob.is_degraded)
            await eventually(lambda: not bob.state.is_loading)

            send_message(self.db, self.conversation.id, "alice", MessageCreate(content="no realtime here"))

            await eventually(lambda: bob.unread_count == 1)
            self.assertGreaterEqual(bob.scheduler.ticks, 1)

    async def test_realtime_disabled_setting_skips_the_bridge(self) -> None:
        async with self._session("bob", settings=_settings(realtime_enabled=False)) as bob:
            self.assertIsNone(bob.bridge)
            self.assertEqual(self.bus.subscriber_count(user_channel("bob")), 0)

    async def test_interval_tightens_while_degraded(self) -> None:
        settings = _settings(degraded_reconciliation_interval_seconds=30.0)
        async with self._session("bob", settings=settings) as bob:
            await eventually(lambda: bob.bridge.is_subscribed)
            self.assertEqual(bob.reconciliation_interval(), 3600.0)

            with self.assertLogs("app.services.event_bridge", level="WARNING"):
                self.bus.available = False
                self.bus.drop_connections()
                await eventually(lambda: bob.is_degraded)
            self.assertEqual(bob.reconciliation_interval(), 30.0)
            self.bus.available = True

    async def test_concurrent_force_refreshes_coalesce(self) -> None:
        async with self._session("bob") as bob:
            await eventually(lambda: bob.bridge.is_subscribed and not bob.state.is_loading)
            await asyncio.sleep(0.02)
            before = self.fetch_calls

            snapshots = await asyncio.gather(*(bob.force_refresh() for _ in range(5)))

            self.assertLessEqual(self.fetch_calls - before, 2)
            self.assertTrue(all(isinstance(snapshot, UnreadSnapshot) for snapshot in snapshots))

    async def test_close_releases_subscription_and_ignores_later_events(self) -> None:
        bob = self._session("bob")
        await bob.start()
        await eventually(lambda: bob.bridge.is_subscribed and not bob.state.is_loading)

        await bob.close()
        calls = self.fetch_calls
        await self._send("alice", "after close")
        await bob.force_refresh()
        await bob.close()

        self.assertTrue(bob.closed)
        self.assertFalse(bob.scheduler.running)
        self.assertEqual(self.bus.subscriber_count(user_channel("bob")), 0)
        self.assertEqual(self.fetch_calls, calls)
        self.assertEqual(bob.unread_count, 0)

    def _session(
        self,
        user_id: str,
        *,
        realtime: bool = True,
        settings: Settings | None = None,
    ) -> MessagingSession:
        fetch = database_fetcher(user_id, self.SessionLocal, offload=False)

        async def counted() -> UnreadSnapshot:
            self.fetch_calls += 1
            return await fetch()

        return MessagingSession(
            user_id,
            counted,
            bus=self.bus if realtime else None,
            settings=settings or _settings(),
        )

    async def _send(self, sender_id: str, content: str) -> None:
        message = send_message(self.db, self.conversation.id, sender_id, MessageCreate(content=content))
        await publish_change(
            self.bus,
            message_inserted(self.conversation.id, sender_id, message.created_at),
            participant_ids(self.db, self.conversation.id),
        )


if __name__ == "__main__":
    unittest.main()

"""Reconciliation scheduler tests."""

from __future__ import annotations

import asyncio
import unittest

from app.services.reconciliation import ReconciliationScheduler
from tests.async_helpers import eventually


class ReconciliationSchedulerTests(unittest.IsolatedAsyncioTestCase):
    async def test_ticks_repeat_until_stopped(self) -> None:
        scheduler = ReconciliationScheduler(lambda: None, 0.01)
        scheduler.start()

        await eventually(lambda: scheduler.ticks >= 3)
        await scheduler.stop()
        ticks = scheduler.ticks
        await asyncio.sleep(0.03)

        self.assertFalse(scheduler.running)
        self.assertEqual(scheduler.ticks, ticks)

    async def test_interval_callable_is_reread_on_reschedule(self) -> None:
        interval = {"seconds": 60.0}
        fired: list[int] = []
        scheduler = ReconciliationScheduler(lambda: fired.append(1), lambda: interval["seconds"])
        scheduler.start()
        await asyncio.sleep(0.02)
        self.assertEqual(fired, [])

        interval["seconds"] = 0.01
        scheduler.reschedule()
        await eventually(lambda: len(fired) >= 1)

        self.assertEqual(scheduler.current_interval(), 0.01)
        await scheduler.stop()

    async def test_stop_without_start_and_reschedule_when_idle(self) -> None:
        scheduler = ReconciliationScheduler(lambda: None, 0.01)

        scheduler.reschedule()
        await scheduler.stop()

        self.assertFalse(scheduler.running)
        self.assertEqual(scheduler.ticks, 0)


if __name__ == "__main__":
    unittest.main()

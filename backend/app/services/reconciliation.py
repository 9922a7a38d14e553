"""Periodic reconciliation: unconditional refreshes on a fixed period."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """Fires ``on_tick`` every ``interval`` seconds, independent of realtime health.

    ``interval`` may be a callable; it is re-read before each wait so the period
    can tighten while realtime is degraded and widen again once it recovers.
    """

    def __init__(self, on_tick: Callable[[], object], interval: float | Callable[[], float]) -> None:
        self._on_tick = on_tick
        self._interval = interval
        self._task: asyncio.Task | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def current_interval(self) -> float:
        return float(self._interval() if callable(self._interval) else self._interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="reconciliation-scheduler")

    def reschedule(self) -> None:
        """Restart the current wait so a changed interval applies right away."""

        if not self.running:
            return
        self._task.cancel()
        self._task = asyncio.create_task(self._run(), name="reconciliation-scheduler")

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()

    async def stop(self) -> None:
        self.cancel()
        task, self._task = self._task, None
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.current_interval())
            self.ticks += 1
            logger.debug("messaging.reconciliation_tick tick=%d", self.ticks)
            self._on_tick()

"""Single-flight refresh coordination."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

from app.services.errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Liveness:
    __slots__ = ("alive",)

    def __init__(self) -> None:
        self.alive = True


class RefreshCoordinator(Generic[T]):
    """Runs at most one fetch at a time and coalesces requests made meanwhile.

    A request that arrives while a fetch is in flight marks one follow-up;
    further requests before that follow-up starts are dropped. Every fetch is
    tagged with an increasing sequence number that ``apply`` receives with the
    result, so a consumer can reject anything older than what it already holds.
    Failures are logged and left for the next trigger to retry.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[T]],
        apply: Callable[[int, T], object],
        *,
        label: str = "",
    ) -> None:
        self._fetch = fetch
        self._apply = apply
        self._label = label
        self._sequence = 0
        self._pending = False
        self._task: asyncio.Task | None = None
        self._liveness = _Liveness()
        self.failures = 0

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def closed(self) -> bool:
        return not self._liveness.alive

    def request(self) -> asyncio.Task | None:
        """Ask for a refresh; returns the task that will satisfy it."""

        if not self._liveness.alive:
            return None
        if self.in_flight:
            self._pending = True
            return self._task
        self._task = asyncio.create_task(self._drain(self._liveness), name=f"unread-refresh:{self._label}")
        return self._task

    async def refresh(self) -> None:
        """Request a refresh and wait until it (or the follow-up covering it) lands."""

        task = self.request()
        if task is not None:
            await asyncio.shield(task)

    def close(self) -> None:
        """Stop accepting requests; results still in flight are discarded."""

        self._liveness.alive = False
        self._pending = False

    async def _drain(self, liveness: _Liveness) -> None:
        while liveness.alive:
            self._pending = False
            self._sequence += 1
            await self._run_once(self._sequence, liveness)
            if not self._pending:
                return

    async def _run_once(self, sequence: int, liveness: _Liveness) -> None:
        try:
            result = await self._fetch()
        except TransientStoreError as exc:
            self.failures += 1
            logger.warning("messaging.refresh_failed label=%s sequence=%d error=%s", self._label, sequence, exc)
            return
        except Exception:
            self.failures += 1
            logger.exception("messaging.refresh_crashed label=%s sequence=%d", self._label, sequence)
            return
        if not liveness.alive:
            logger.debug("messaging.refresh_discarded label=%s sequence=%d", self._label, sequence)
            return
        self._apply(sequence, result)

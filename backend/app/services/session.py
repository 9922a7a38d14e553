"""Per-client messaging session.

A session owns the unread state for one connected client. Three producers
feed refresh requests into its single-flight coordinator: the realtime
bridge, the reconciliation timer, and explicit ``force_refresh`` calls.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.orm import Session, sessionmaker

from app.config import Settings, get_settings
from app.services.change_feed import ChangeBus
from app.services.event_bridge import BridgeState, EventBridge
from app.services.reconciliation import ReconciliationScheduler
from app.services.refresh import RefreshCoordinator
from app.services.unread import UnreadSnapshot, compute_unread_snapshot
from app.services.unread_state import StateListener, UnreadState

logger = logging.getLogger(__name__)

SnapshotFetcher = Callable[[], Awaitable[UnreadSnapshot]]


def database_fetcher(
    user_id: str,
    session_factory: sessionmaker[Session] | Callable[[], Session],
    *,
    offload: bool = True,
) -> SnapshotFetcher:
    """Build a fetcher that runs the aggregate query in a fresh DB session.

    With ``offload`` the blocking query runs in a worker thread.
    """

    def load() -> UnreadSnapshot:
        with session_factory() as db:
            return compute_unread_snapshot(db, user_id)

    async def fetch() -> UnreadSnapshot:
        if offload:
            return await asyncio.to_thread(load)
        return load()

    return fetch


class MessagingSession:
    """Bridge, scheduler and unread state for one connected client."""

    def __init__(
        self,
        user_id: str,
        fetch: SnapshotFetcher,
        *,
        bus: ChangeBus | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.user_id = user_id
        self._settings = settings or get_settings()
        self.state = UnreadState()
        self._coordinator: RefreshCoordinator[UnreadSnapshot] = RefreshCoordinator(
            fetch,
            self.state.apply,
            label=user_id,
        )
        self.bridge: EventBridge | None = None
        if bus is not None and self._settings.realtime_enabled:
            self.bridge = EventBridge(
                bus,
                user_id,
                self._coordinator.request,
                initial_delay=self._settings.reconnect_initial_delay_seconds,
                max_delay=self._settings.reconnect_max_delay_seconds,
                backoff_factor=self._settings.reconnect_backoff_factor,
                on_state_change=self._on_bridge_state,
            )
        self.scheduler = ReconciliationScheduler(self._coordinator.request, self.reconciliation_interval)
        self._started = False
        self._closed = False
        self._degraded = True

    @property
    def is_degraded(self) -> bool:
        """True while only the reconciliation timer keeps the state fresh."""

        return self.bridge is None or not self.bridge.is_subscribed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def snapshot(self) -> UnreadSnapshot:
        return self.state.snapshot

    @property
    def unread_count(self) -> int:
        return self.state.unread_count

    def reconciliation_interval(self) -> float:
        if self.is_degraded:
            return self._settings.degraded_reconciliation_interval_seconds
        return self._settings.reconciliation_interval_seconds

    async def start(self) -> None:
        if self._started or self._closed:
            return
        self._started = True
        self._coordinator.request()
        if self.bridge is not None:
            self.bridge.start()
        self.scheduler.start()
        logger.info("messaging.session_started user_id=%s realtime=%s", self.user_id, self.bridge is not None)

    async def force_refresh(self) -> UnreadSnapshot:
        """Recompute now and return the latest applied snapshot."""

        await self._coordinator.refresh()
        return self.state.snapshot

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        return self.state.subscribe(listener)

    async def close(self) -> None:
        """Tear down timer and subscription together; late results are dropped."""

        if self._closed:
            return
        self._closed = True
        self._coordinator.close()
        self.scheduler.cancel()
        if self.bridge is not None:
            self.bridge.cancel()
        await self.scheduler.stop()
        if self.bridge is not None:
            await self.bridge.stop()
        logger.info("messaging.session_closed user_id=%s", self.user_id)

    async def __aenter__(self) -> MessagingSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _on_bridge_state(self, state: BridgeState) -> None:
        if self._closed:
            return
        degraded = state is not BridgeState.SUBSCRIBED
        if degraded == self._degraded:
            return
        self._degraded = degraded
        if degraded:
            logger.info(
                "messaging.session_degraded user_id=%s interval=%.1fs",
                self.user_id,
                self.reconciliation_interval(),
            )
        else:
            logger.info("messaging.session_realtime_restored user_id=%s", self.user_id)
        self.scheduler.reschedule()

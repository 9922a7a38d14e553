"""Realtime event bridge: change notifications to refresh requests.

One bridge per client session. It never touches unread state itself: every
relevant event, and every (re)connect, only asks the session to recompute
through the gateway.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from contextlib import suppress
from enum import Enum

from app.services.change_feed import MESSAGE_INSERTED, WATERMARK_UPDATED, ChangeBus, ChangeSubscription, user_channel
from app.services.errors import SubscriptionError

logger = logging.getLogger(__name__)

RELEVANT_EVENTS = frozenset({MESSAGE_INSERTED, WATERMARK_UPDATED})


class BridgeState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"


class EventBridge:
    """Keeps one subscription alive for a user and turns events into refreshes."""

    def __init__(
        self,
        bus: ChangeBus,
        user_id: str,
        on_refresh: Callable[[], object],
        *,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        backoff_factor: float = 1.5,
        on_state_change: Callable[[BridgeState], object] | None = None,
    ) -> None:
        self._bus = bus
        self.user_id = user_id
        self._on_refresh = on_refresh
        self._on_state_change = on_state_change
        self._initial_delay = initial_delay
        self._max_delay = max_delay
        self._backoff_factor = backoff_factor

        self.state = BridgeState.DISCONNECTED
        self.connect_count = 0
        self._consecutive_failures = 0
        self._subscription: ChangeSubscription | None = None
        self._task: asyncio.Task | None = None

    @property
    def channel(self) -> str:
        return user_channel(self.user_id)

    @property
    def is_subscribed(self) -> bool:
        return self.state is BridgeState.SUBSCRIBED

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name=f"event-bridge:{self.user_id}")

    def cancel(self) -> None:
        """Stop listening without waiting; ``stop`` finishes the tear-down."""

        if self._task is not None:
            self._task.cancel()

    async def stop(self) -> None:
        """Unsubscribe and release the channel; a no-op when already disconnected."""

        self.cancel()
        task, self._task = self._task, None
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task
        await self._close_subscription()
        self._set_state(BridgeState.DISCONNECTED)

    async def _run(self) -> None:
        while True:
            self._set_state(BridgeState.CONNECTING)
            try:
                self._subscription = await self._bus.subscribe(self.channel)
            except SubscriptionError as exc:
                await self._backoff(exc)
                continue

            self._consecutive_failures = 0
            self.connect_count += 1
            self._set_state(BridgeState.SUBSCRIBED)
            # Anything published while we were not subscribed is gone.
            self._on_refresh()

            try:
                await self._listen(self._subscription)
            except SubscriptionError as exc:
                await self._close_subscription()
                await self._backoff(exc)
            except Exception as exc:
                logger.exception("messaging.bridge_listener_crashed user_id=%s", self.user_id)
                await self._close_subscription()
                await self._backoff(exc)

    async def _listen(self, subscription: ChangeSubscription) -> None:
        while True:
            event = await subscription.receive()
            if event.kind in RELEVANT_EVENTS:
                self._on_refresh()

    async def _backoff(self, exc: Exception) -> None:
        self._set_state(BridgeState.DISCONNECTED)
        self._consecutive_failures += 1
        delay = min(
            self._initial_delay * (self._backoff_factor ** (self._consecutive_failures - 1)),
            self._max_delay,
        )
        delay = max(0.0, delay + delay * 0.2 * (2 * random.random() - 1))
        logger.warning(
            "messaging.bridge_disconnected user_id=%s attempt=%d retry_in=%.2fs error=%s",
            self.user_id,
            self._consecutive_failures,
            delay,
            exc,
        )
        await asyncio.sleep(delay)

    async def _close_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            await subscription.close()
        except SubscriptionError as exc:
            logger.debug("messaging.bridge_close_failed user_id=%s error=%s", self.user_id, exc)

    def _set_state(self, state: BridgeState) -> None:
        if state is self.state:
            return
        logger.info("messaging.bridge_state user_id=%s from=%s to=%s", self.user_id, self.state.value, state.value)
        self.state = state
        if self._on_state_change is not None:
            self._on_state_change(state)

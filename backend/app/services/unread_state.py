"""Client unread state: last known snapshot plus change listeners."""

from __future__ import annotations

import logging
from collections.abc import Callable

from app.services.unread import UnreadSnapshot

logger = logging.getLogger(__name__)

StateListener = Callable[[UnreadSnapshot], object]


class UnreadState:
    """Holds the last applied unread snapshot.

    Consumers read it and subscribe to changes. Only the refresh coordinator
    writes, through ``apply``; each snapshot replaces the previous one whole.
    """

    def __init__(self) -> None:
        self._snapshot = UnreadSnapshot()
        self._sequence = 0
        self._loaded = False
        self._listeners: list[StateListener] = []

    @property
    def snapshot(self) -> UnreadSnapshot:
        return self._snapshot

    @property
    def sequence(self) -> int:
        return self._sequence

    @property
    def unread_count(self) -> int:
        return self._snapshot.total_unread

    @property
    def is_loading(self) -> bool:
        return not self._loaded

    def apply(self, sequence: int, snapshot: UnreadSnapshot) -> bool:
        """Replace the snapshot unless ``sequence`` is older than the current one."""

        if sequence < self._sequence:
            logger.debug("messaging.stale_snapshot_rejected sequence=%d current=%d", sequence, self._sequence)
            return False
        changed = not self._loaded or snapshot != self._snapshot
        self._snapshot = snapshot
        self._sequence = sequence
        self._loaded = True
        if changed:
            self._notify(snapshot)
        return True

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unregisters it."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, snapshot: UnreadSnapshot) -> None:
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("messaging.state_listener_failed")

"""Change notifications over pub/sub.

Writes publish small events to one channel per entitled user. Subscribers
only learn *that* something changed; they re-derive state through the
gateway. Redis pub/sub is used when ``REDIS_URL`` is configured, otherwise
an in-process bus with the same contract.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Literal, Protocol

import redis.asyncio as redis
from pydantic import BaseModel, ConfigDict, ValidationError
from redis.exceptions import RedisError

from app.config import get_settings
from app.models.timestamp_type import utcnow
from app.services.errors import SubscriptionError

logger = logging.getLogger(__name__)

MESSAGE_INSERTED = "message_inserted"
WATERMARK_UPDATED = "participant_watermark_updated"

ChangeKind = Literal["message_inserted", "participant_watermark_updated"]


class ChangeEvent(BaseModel):
    """Low-level row change notification."""

    model_config = ConfigDict(frozen=True)

    kind: ChangeKind
    conversation_id: str
    actor_id: str
    occurred_at: datetime


def user_channel(user_id: str) -> str:
    return f"messaging:user:{user_id}"


def message_inserted(conversation_id: str, sender_id: str, created_at: datetime | None = None) -> ChangeEvent:
    return ChangeEvent(
        kind=MESSAGE_INSERTED,
        conversation_id=conversation_id,
        actor_id=sender_id,
        occurred_at=created_at or utcnow(),
    )


def watermark_updated(conversation_id: str, user_id: str, last_read_at: datetime | None = None) -> ChangeEvent:
    return ChangeEvent(
        kind=WATERMARK_UPDATED,
        conversation_id=conversation_id,
        actor_id=user_id,
        occurred_at=last_read_at or utcnow(),
    )


class ChangeSubscription(Protocol):
    async def receive(self) -> ChangeEvent:
        """Wait for the next event; raise ``SubscriptionError`` when the channel drops."""

    async def close(self) -> None:
        """Release the channel; safe to call more than once."""


class ChangeBus(Protocol):
    async def publish(self, channel: str, event: ChangeEvent) -> None:
        """Fire-and-forget delivery to current subscribers of ``channel``."""

    async def subscribe(self, channel: str) -> ChangeSubscription:
        """Open a subscription or raise ``SubscriptionError``."""


async def publish_change(bus: ChangeBus, event: ChangeEvent, recipient_ids: Iterable[str]) -> None:
    """Notify every entitled participant of a change."""

    for user_id in recipient_ids:
        await bus.publish(user_channel(user_id), event)


_DROPPED = object()


class _InMemorySubscription:
    def __init__(self, bus: InMemoryChangeBus, channel: str) -> None:
        self._bus = bus
        self.channel = channel
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self.closed = False

    def _deliver(self, item: Any) -> None:
        self._queue.put_nowait(item)

    async def receive(self) -> ChangeEvent:
        if self.closed:
            raise SubscriptionError(f"subscription to {self.channel} is closed")
        item = await self._queue.get()
        if item is _DROPPED:
            self.closed = True
            raise SubscriptionError(f"connection to {self.channel} lost")
        return item

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus._detach(self)


class InMemoryChangeBus:
    """Process-local pub/sub with at-most-once delivery, like Redis pub/sub."""

    def __init__(self) -> None:
        self._subscribers: dict[str, set[_InMemorySubscription]] = defaultdict(set)
        self.available = True
        self.published: list[tuple[str, ChangeEvent]] = []

    async def publish(self, channel: str, event: ChangeEvent) -> None:
        self.published.append((channel, event))
        for subscription in list(self._subscribers.get(channel, ())):
            subscription._deliver(event)

    async def subscribe(self, channel: str) -> _InMemorySubscription:
        if not self.available:
            raise SubscriptionError(f"cannot subscribe to {channel}: bus unavailable")
        subscription = _InMemorySubscription(self, channel)
        self._subscribers[channel].add(subscription)
        return subscription

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    def drop_connections(self) -> None:
        """Sever every live subscription, as a transport outage would."""

        for subscriptions in self._subscribers.values():
            for subscription in subscriptions:
                subscription._deliver(_DROPPED)
        self._subscribers.clear()

    def _detach(self, subscription: _InMemorySubscription) -> None:
        subscriptions = self._subscribers.get(subscription.channel)
        if subscriptions is None:
            return
        subscriptions.discard(subscription)
        if not subscriptions:
            del self._subscribers[subscription.channel]


class _RedisSubscription:
    def __init__(self, pubsub: Any, channel: str, poll_timeout: float) -> None:
        self._pubsub = pubsub
        self.channel = channel
        self._poll_timeout = poll_timeout
        self._closed = False

    async def receive(self) -> ChangeEvent:
        while True:
            if self._closed:
                raise SubscriptionError(f"subscription to {self.channel} is closed")
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=self._poll_timeout)
            except (RedisError, OSError) as exc:
                raise SubscriptionError(f"connection to {self.channel} lost: {exc}") from exc
            if not message or message.get("type") != "message":
                continue
            data = message.get("data")
            try:
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                return ChangeEvent.model_validate_json(data)
            except (UnicodeDecodeError, ValidationError):
                logger.warning("messaging.malformed_change_event channel=%s", self.channel)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self.channel)
        except (RedisError, OSError) as exc:
            logger.debug("messaging.unsubscribe_failed channel=%s error=%s", self.channel, exc)
        finally:
            await self._pubsub.aclose()


class RedisChangeBus:
    """Redis PUBLISH/SUBSCRIBE transport sharing one connection pool."""

    def __init__(self, client: Any, *, poll_timeout: float = 1.0) -> None:
        self._redis = client
        self._poll_timeout = poll_timeout

    @classmethod
    def from_url(cls, url: str) -> RedisChangeBus:
        return cls(redis.from_url(url))

    async def publish(self, channel: str, event: ChangeEvent) -> None:
        try:
            await self._redis.publish(channel, event.model_dump_json())
        except (RedisError, OSError) as exc:
            # Reconciliation polling heals a lost notification.
            logger.warning("messaging.publish_failed channel=%s kind=%s error=%s", channel, event.kind, exc)

    async def subscribe(self, channel: str) -> _RedisSubscription:
        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(channel)
        except (RedisError, OSError) as exc:
            await pubsub.aclose()
            raise SubscriptionError(f"cannot subscribe to {channel}: {exc}") from exc
        return _RedisSubscription(pubsub, channel, self._poll_timeout)

    async def aclose(self) -> None:
        await self._redis.aclose()


_bus: ChangeBus | None = None


def get_change_bus() -> ChangeBus:
    """Return the process-wide change bus."""

    global _bus
    if _bus is None:
        url = get_settings().redis_url
        _bus = RedisChangeBus.from_url(url) if url else InMemoryChangeBus()
    return _bus


async def close_change_bus() -> None:
    global _bus
    bus, _bus = _bus, None
    if isinstance(bus, RedisChangeBus):
        await bus.aclose()

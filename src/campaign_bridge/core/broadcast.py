"""Subscriber broadcast channel.

Fans typed events (``call_started``, ``transcript_update``,
``campaign_update``, ``conference_*``, ``audio_*`` ...) out to dashboard
subscribers. Each subscriber owns a bounded queue; a slow consumer loses
its oldest events instead of stalling publishers.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator
from uuid import uuid4

from bridge_shared import get_logger

log = get_logger(__name__)


@dataclass
class BroadcastEvent:
    """A single event delivered to subscribers."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    call_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        result: dict[str, Any] = {
            "type": self.type,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }
        if self.call_id:
            result["callId"] = self.call_id
        return result


class Subscription:
    """Queue-backed subscription returned by ``EventBroadcaster.subscribe``."""

    def __init__(
        self,
        broadcaster: EventBroadcaster,
        call_id: str | None,
        max_queue: int,
    ) -> None:
        self.id = str(uuid4())
        self.call_id = call_id
        self.dropped = 0
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[BroadcastEvent] = asyncio.Queue(maxsize=max_queue)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def wants(self, event: BroadcastEvent) -> bool:
        return self.call_id is None or event.call_id == self.call_id

    def offer(self, event: BroadcastEvent) -> None:
        if self._closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> BroadcastEvent:
        """Wait for the next event.

        Raises:
            asyncio.TimeoutError: If no event arrives within ``timeout``
        """
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def get_nowait(self) -> BroadcastEvent | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._broadcaster._unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[BroadcastEvent]:
        return self

    async def __anext__(self) -> BroadcastEvent:
        if self._closed:
            raise StopAsyncIteration
        return await self._queue.get()


class EventBroadcaster:
    """In-process publish/subscribe hub."""

    def __init__(self, max_queue: int = 1000) -> None:
        self._max_queue = max_queue
        self._subscriptions: dict[str, Subscription] = {}
        self._published = 0

    def subscribe(self, call_id: str | None = None) -> Subscription:
        """Register a subscriber.

        Args:
            call_id: Only receive events for this call (None = everything)
        """
        subscription = Subscription(self, call_id, self._max_queue)
        self._subscriptions[subscription.id] = subscription
        log.info(
            "Subscriber added",
            subscription_id=subscription.id,
            call_id=call_id,
            total=len(self._subscriptions),
        )
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)
        log.info(
            "Subscriber removed",
            subscription_id=subscription.id,
            dropped=subscription.dropped,
            remaining=len(self._subscriptions),
        )

    def publish(
        self,
        event_type: str,
        data: dict[str, Any] | None = None,
        call_id: str | None = None,
    ) -> BroadcastEvent:
        """Deliver an event to every interested subscriber."""
        event = BroadcastEvent(type=event_type, data=data or {}, call_id=call_id)
        self._published += 1

        for subscription in list(self._subscriptions.values()):
            if subscription.wants(event):
                subscription.offer(event)

        log.debug("Event published", type=event_type, call_id=call_id)
        return event

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def get_stats(self) -> dict[str, Any]:
        return {
            "subscribers": len(self._subscriptions),
            "published": self._published,
        }

    def close(self) -> None:
        """Close every subscription."""
        for subscription in list(self._subscriptions.values()):
            subscription.close()

"""
Bounded fan-out of live log events.

One upstream event stream (the log tail) is broadcast to a bounded set of
subscribers. Each subscriber receives batches in upstream order; no
ordering is implied across subscribers.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Set

from usage_sentinel.errors import CapacityExceeded, SinkClosed
from .sanitizer import sanitize_event

logger = logging.getLogger(__name__)

DEFAULT_MAX_SUBSCRIBERS = 50
DEFAULT_QUEUE_SIZE = 256

EventBatch = List[Dict[str, Any]]


def format_sse(batch: EventBatch) -> str:
    """Render a batch as a server-sent-events data frame."""
    return f"data: {json.dumps(batch)}\n\n"


class Subscription:
    """Sink for one live subscriber.

    Batches are buffered in a bounded queue. A closed subscription, or one
    whose consumer has fallen a full queue behind, rejects further pushes.
    """

    def __init__(self, max_queue: int = DEFAULT_QUEUE_SIZE):
        self._queue: "asyncio.Queue[EventBatch]" = asyncio.Queue(maxsize=max_queue)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, batch: EventBatch) -> None:
        """Enqueue a batch for delivery.

        Raises:
            SinkClosed: If the subscription is closed or its queue is full
        """
        if self._closed:
            raise SinkClosed("subscription is closed")
        try:
            self._queue.put_nowait(batch)
        except asyncio.QueueFull:
            self._closed = True
            raise SinkClosed("subscriber queue is full")

    def close(self) -> None:
        self._closed = True

    async def get(self) -> EventBatch:
        return await self._queue.get()

    def get_nowait(self) -> EventBatch:
        return self._queue.get_nowait()

    async def stream(self) -> AsyncIterator[str]:
        """Yield SSE frames until the subscription is closed and drained."""
        while not (self._closed and self._queue.empty()):
            try:
                batch = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            yield format_sse(batch)


class Broadcaster:
    """Holds live subscriptions and pushes sanitized batches to all of them."""

    def __init__(self, max_subscribers: int = DEFAULT_MAX_SUBSCRIBERS):
        if max_subscribers <= 0:
            raise ValueError("max_subscribers must be > 0")
        self.max_subscribers = max_subscribers
        self._subscribers: Set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        """Register a new subscriber.

        Raises:
            CapacityExceeded: If the subscriber limit has been reached
        """
        if len(self._subscribers) >= self.max_subscribers:
            raise CapacityExceeded(
                f"Too many live subscribers (limit {self.max_subscribers})",
                limit=self.max_subscribers
            )
        subscription = Subscription()
        self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        self._subscribers.discard(subscription)

    def publish(self, events: EventBatch) -> int:
        """Sanitize a batch and push it to every live subscriber.

        Subscribers whose push fails are dropped.

        Returns:
            Number of subscribers the batch was delivered to
        """
        batch = [sanitize_event(event) for event in events]
        delivered = 0
        for subscription in list(self._subscribers):
            try:
                subscription.push(batch)
                delivered += 1
            except SinkClosed:
                self._subscribers.discard(subscription)
                logger.debug("Dropped closed subscriber (%d remaining)", len(self._subscribers))
        return delivered

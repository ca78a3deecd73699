"""Fan RemoteState snapshots out to subscribers.

Each subscriber owns a bounded queue. ``publish`` only enqueues, so a
slow or stalled subscriber can never hold up the broker: when its queue
is full the oldest pending snapshot is dropped. Snapshots are therefore
coalesced but never reordered.
"""

import asyncio
import logging
from typing import Optional

from pairlink.state import RemoteState

logger = logging.getLogger(__name__)


class SubscriptionClosed(Exception):
    """Raised by Subscription.get() after the subscription was closed."""


class Subscription:
    """A subscriber's view of the state-change feed.

    Usage:
        async with publisher.subscribe() as sub:
            async for snapshot in sub:
                render(snapshot)
    """

    def __init__(self, publisher: "StatePublisher", maxsize: int):
        self._publisher = publisher
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, snapshot: Optional[RemoteState]) -> None:
        """Enqueue without blocking; None is the end-of-feed marker."""
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(snapshot)

    async def get(self) -> RemoteState:
        """Wait for the next snapshot.

        Raises:
            SubscriptionClosed: If the subscription ended.
        """
        if self._closed and self._queue.empty():
            raise SubscriptionClosed()
        snapshot = await self._queue.get()
        if snapshot is None:
            raise SubscriptionClosed()
        return snapshot

    def get_nowait(self) -> Optional[RemoteState]:
        """Return the next queued snapshot, or None if nothing is pending."""
        if self._queue.empty():
            return None
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Unsubscribe. A pending get() wakes with SubscriptionClosed."""
        if self._closed:
            return
        self._closed = True
        self._publisher.unsubscribe(self)
        self._deliver(None)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> RemoteState:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class StatePublisher:
    """Broadcast snapshots to a dynamic set of subscribers."""

    def __init__(self, initial: RemoteState, queue_size: int = 16):
        """Initialize publisher.

        Args:
            initial: Snapshot handed to subscribers before any publish.
            queue_size: Per-subscriber queue bound.
        """
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        self._current = initial
        self._queue_size = queue_size
        self._subscribers: list[Subscription] = []

    @property
    def current(self) -> RemoteState:
        """Most recently published snapshot."""
        return self._current

    def publish(self, snapshot: RemoteState) -> None:
        """Deliver snapshot to every subscriber. Never blocks."""
        self._current = snapshot
        for sub in list(self._subscribers):
            sub._deliver(snapshot)

    def subscribe(self, prime: Optional[RemoteState] = None) -> Subscription:
        """Add a subscriber primed with prime, or the last published snapshot."""
        sub = Subscription(self, self._queue_size)
        sub._deliver(prime if prime is not None else self._current)
        self._subscribers.append(sub)
        logger.debug(f"Subscriber added ({len(self._subscribers)} total)")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)
            logger.debug(f"Subscriber removed ({len(self._subscribers)} total)")

    def close(self) -> None:
        """End every subscription."""
        for sub in list(self._subscribers):
            sub.close()

    def __len__(self) -> int:
        return len(self._subscribers)

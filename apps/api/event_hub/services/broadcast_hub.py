"""
Fan-out of newly appended events to every connected subscriber.

Publishing never suspends: each subscriber owns a bounded queue, and when that
queue is full the oldest undelivered item is dropped and remembered so the
subscriber can be told where its gap starts.
"""

import asyncio
import itertools

import structlog

from event_hub.schemas.events import (
    Event,
    EventEnvelope,
    GapMarker,
    ResumeCursor,
    SessionUpdate,
)
from event_hub.schemas.sessions import SessionState

logger = structlog.get_logger()

QueueItem = EventEnvelope | SessionUpdate


class Subscription:
    def __init__(self, subscriber_id: str, max_queue: int) -> None:
        self.id = subscriber_id
        self.queue: asyncio.Queue[QueueItem] = asyncio.Queue(maxsize=max_queue)
        self.closed = False
        self.missed_total = 0
        self._pending_drops = 0
        self._gap_starts: dict[tuple[str, str], int] = {}

    @property
    def has_gap(self) -> bool:
        return self._pending_drops > 0

    def offer(self, item: QueueItem) -> bool:
        """Enqueue without waiting; returns False when an older item had to go."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(item)
            return True
        except asyncio.QueueFull:
            self._drop(self.queue.get_nowait())
            self.queue.put_nowait(item)
            return False

    def _drop(self, item: QueueItem) -> None:
        self._pending_drops += 1
        self.missed_total += 1
        if isinstance(item, EventEnvelope):
            key = (item.event.app, item.event.session_id)
            first = self._gap_starts.get(key)
            if first is None or item.event.sequence < first:
                self._gap_starts[key] = item.event.sequence

    def take_gap(self) -> GapMarker | None:
        """Pop the pending gap, if any, as a marker for the client."""
        if not self._pending_drops:
            return None
        marker = GapMarker(
            dropped=self._pending_drops,
            resume_from=[
                ResumeCursor(app=app, session_id=session_id, sequence=first - 1)
                for (app, session_id), first in sorted(self._gap_starts.items())
            ],
        )
        self._pending_drops = 0
        self._gap_starts.clear()
        return marker

    async def next_item(self, timeout: float | None = None) -> QueueItem | None:
        """Wait for the next item; ``None`` when ``timeout`` elapses first."""
        if timeout is None:
            return await self.queue.get()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except TimeoutError:
            return None

    def close(self) -> None:
        self.closed = True
        while not self.queue.empty():
            self.queue.get_nowait()


class BroadcastHub:
    def __init__(self, queue_size: int = 256) -> None:
        self.queue_size = queue_size
        self._subscriptions: dict[str, Subscription] = {}
        self._ids = itertools.count(1)

    def subscribe(self, queue_size: int | None = None) -> Subscription:
        subscription = Subscription(
            subscriber_id=f"sub-{next(self._ids)}",
            max_queue=queue_size or self.queue_size,
        )
        self._subscriptions[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)
        subscription.close()

    def publish(self, event: Event, session_state: SessionState | None) -> int:
        """Hand ``event`` to every subscriber; returns how many had to drop."""
        envelope = EventEnvelope(event=event, session_state=session_state)
        return self._fanout(envelope)

    def publish_session(self, session_state: SessionState) -> int:
        return self._fanout(SessionUpdate(session_state=session_state))

    def _fanout(self, item: QueueItem) -> int:
        overloaded = 0
        for subscription in list(self._subscriptions.values()):
            was_behind = subscription.has_gap
            if subscription.offer(item):
                continue
            overloaded += 1
            if not was_behind:
                logger.warning(
                    "subscriber_overloaded",
                    subscriber_id=subscription.id,
                    queue_size=subscription.queue.maxsize,
                )
        return overloaded

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

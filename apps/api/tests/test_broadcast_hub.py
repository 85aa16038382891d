import asyncio
from datetime import UTC, datetime

import pytest
from structlog.testing import capture_logs

from event_hub.schemas.events import Event, EventEnvelope, EventType, GapMarker, SessionUpdate
from event_hub.schemas.sessions import SessionState, SessionStatus
from event_hub.services.broadcast_hub import BroadcastHub

NOW = datetime(2026, 1, 1, tzinfo=UTC)


def event(sequence, session_id="s1", app="demo"):
    return Event(
        app=app,
        session_id=session_id,
        sequence=sequence,
        event_type=EventType.PRE_TOOL_USE,
        event_name="PreToolUse",
        payload={"n": sequence},
        received_at=NOW,
    )


def state(session_id="s1", status=SessionStatus.ACTIVE):
    return SessionState(
        app="demo",
        session_id=session_id,
        status=status,
        started_at=NOW,
        last_event_at=NOW,
        event_count=1,
        last_sequence=1,
    )


def drain(subscription):
    items = []
    while not subscription.queue.empty():
        items.append(subscription.queue.get_nowait())
    return items


def test_publish_reaches_every_subscriber():
    hub = BroadcastHub(queue_size=10)
    first = hub.subscribe()
    second = hub.subscribe()

    hub.publish(event(1), state())

    for subscription in (first, second):
        (item,) = drain(subscription)
        assert isinstance(item, EventEnvelope)
        assert item.event.sequence == 1
        assert item.session_state.status is SessionStatus.ACTIVE


def test_subscribers_get_distinct_ids():
    hub = BroadcastHub()
    assert hub.subscribe().id != hub.subscribe().id
    assert hub.subscriber_count == 2


def test_full_queue_drops_oldest_without_blocking():
    hub = BroadcastHub(queue_size=10)
    subscription = hub.subscribe()
    for sequence in range(1, 11):
        assert hub.publish(event(sequence), state()) == 0

    overloaded = hub.publish(event(11), state())

    assert overloaded == 1
    delivered = [item.event.sequence for item in drain(subscription)]
    assert delivered == list(range(2, 12))
    assert subscription.missed_total == 1


def test_gap_marker_points_before_first_dropped_event():
    hub = BroadcastHub(queue_size=10)
    subscription = hub.subscribe()
    for sequence in range(1, 12):
        hub.publish(event(sequence), state())

    gap = subscription.take_gap()

    assert isinstance(gap, GapMarker)
    assert gap.dropped == 1
    assert [(c.app, c.session_id, c.sequence) for c in gap.resume_from] == [("demo", "s1", 0)]
    assert subscription.take_gap() is None


def test_gap_marker_covers_every_affected_session():
    hub = BroadcastHub(queue_size=2)
    subscription = hub.subscribe()
    hub.publish(event(4, session_id="b"), state("b"))
    hub.publish(event(7, session_id="a"), state("a"))
    hub.publish(event(5, session_id="b"), state("b"))
    hub.publish(event(8, session_id="a"), state("a"))

    gap = subscription.take_gap()

    assert gap.dropped == 2
    assert [(c.session_id, c.sequence) for c in gap.resume_from] == [("a", 6), ("b", 3)]


def test_slow_subscriber_does_not_affect_others():
    hub = BroadcastHub(queue_size=3)
    slow = hub.subscribe()
    fast = hub.subscribe(queue_size=100)

    for sequence in range(1, 21):
        hub.publish(event(sequence), state())

    assert [item.event.sequence for item in drain(fast)] == list(range(1, 21))
    assert fast.take_gap() is None
    assert [item.event.sequence for item in drain(slow)] == [18, 19, 20]
    assert slow.take_gap().dropped == 17


def test_overload_is_logged_once_per_gap():
    hub = BroadcastHub(queue_size=1)
    hub.subscribe()

    with capture_logs() as logs:
        for sequence in range(1, 5):
            hub.publish(event(sequence), state())

    assert [entry["event"] for entry in logs] == ["subscriber_overloaded"]


def test_unsubscribe_stops_delivery():
    hub = BroadcastHub(queue_size=10)
    subscription = hub.subscribe()

    hub.unsubscribe(subscription)
    hub.publish(event(1), state())

    assert hub.subscriber_count == 0
    assert subscription.closed
    assert drain(subscription) == []
    hub.unsubscribe(subscription)


def test_session_updates_are_fanned_out():
    hub = BroadcastHub(queue_size=10)
    subscription = hub.subscribe()

    hub.publish_session(state(status=SessionStatus.STOPPED))

    (item,) = drain(subscription)
    assert isinstance(item, SessionUpdate)
    assert item.session_state.status is SessionStatus.STOPPED


@pytest.mark.asyncio
async def test_next_item_times_out_with_none():
    hub = BroadcastHub()
    subscription = hub.subscribe()

    assert await subscription.next_item(timeout=0.01) is None


@pytest.mark.asyncio
async def test_next_item_preserves_publish_order():
    hub = BroadcastHub(queue_size=50)
    subscription = hub.subscribe()

    async def consume():
        return [(await subscription.next_item(timeout=1)).event.sequence for _ in range(20)]

    consumer = asyncio.create_task(consume())
    for sequence in range(1, 21):
        hub.publish(event(sequence), state())
        if sequence % 5 == 0:
            await asyncio.sleep(0)

    assert await consumer == list(range(1, 21))

import asyncio
import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect, WebSocketState

from event_hub.main import create_app
from event_hub.services.subscription_gateway import SubscriptionGateway


def hook(event_type, session_id="s1", app="demo"):
    return {"app": app, "session_id": session_id, "event_type": event_type, "payload": {}}


def read_backfill(ws):
    """Collect backfilled frames up to and including the ``live`` marker."""
    frames = []
    while True:
        message = ws.receive_json()
        if message["type"] == "live":
            return frames, message
        frames.append(message)


@pytest.fixture
def test_client(settings):
    with TestClient(create_app(settings)) as client:
        yield client


def test_connection_frame_then_recent_backfill(test_client):
    for event_type in ("UserPromptSubmit", "PreToolUse", "PostToolUse"):
        test_client.post("/events", json=hook(event_type))

    with test_client.websocket_connect("/ws") as ws:
        hello = ws.receive_json()
        assert hello["type"] == "connection"
        assert hello["subscriber_id"]

        frames, live = read_backfill(ws)

    assert [f["event"]["sequence"] for f in frames] == [1, 2, 3]
    assert all(f["type"] == "event" and f["backfill"] for f in frames)
    assert frames[-1]["session_state"]["event_count"] == 3
    assert live["backfilled"] == 3


def test_resume_from_cursor_then_live(test_client):
    for _ in range(5):
        test_client.post("/events", json=hook("PreToolUse"))

    with test_client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"resume_from": [{"app": "demo", "session_id": "s1", "sequence": 2}]})
        frames, live = read_backfill(ws)

        assert [f["event"]["sequence"] for f in frames] == [3, 4, 5]
        assert live["backfilled"] == 3

        test_client.post("/events", json=hook("PostToolUse"))
        pushed = ws.receive_json()

    assert pushed["type"] == "event"
    assert pushed["backfill"] is False
    assert pushed["event"]["sequence"] == 6
    assert pushed["session_state"]["last_sequence"] == 6


def test_backfill_and_live_cover_history_once(test_client):
    for _ in range(3):
        test_client.post("/events", json=hook("PreToolUse"))

    with test_client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"resume_from": [{"app": "demo", "session_id": "s1", "sequence": 0}]})
        frames, _ = read_backfill(ws)
        for _ in range(3):
            test_client.post("/events", json=hook("PostToolUse"))
        live = [ws.receive_json() for _ in range(3)]

    sequences = [f["event"]["sequence"] for f in frames + live]
    assert sequences == [1, 2, 3, 4, 5, 6]


def test_stop_is_pushed_with_stopped_state(test_client):
    test_client.post("/events", json=hook("UserPromptSubmit"))

    with test_client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"resume_from": []})
        frames, live = read_backfill(ws)
        assert frames == []
        assert live["backfilled"] == 0

        test_client.post("/events", json=hook("Stop"))
        pushed = ws.receive_json()

    assert pushed["event"]["event_type"] == "Stop"
    assert pushed["session_state"]["status"] == "stopped"
    assert pushed["session_state"]["stop_reason"] == "stop_event"


def test_other_sessions_stream_live(test_client):
    with test_client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"resume_from": [{"app": "demo", "session_id": "s1", "sequence": 0}]})
        read_backfill(ws)

        test_client.post("/events", json=hook("UserPromptSubmit", session_id="s2"))
        pushed = ws.receive_json()

    assert pushed["event"]["session_id"] == "s2"
    assert pushed["event"]["sequence"] == 1


def test_ping_gets_pong(test_client):
    with test_client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"resume_from": []})
        read_backfill(ws)

        ws.send_text("ping")
        assert ws.receive_json() == {"type": "pong"}
        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}


def test_unsubscribe_closes_the_stream(test_client):
    with test_client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"resume_from": []})
        read_backfill(ws)

        ws.send_json({"type": "unsubscribe"})
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()


def test_invalid_subscribe_request_falls_back_to_recent(test_client):
    test_client.post("/events", json=hook("UserPromptSubmit"))

    with test_client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_text("not a subscribe request")
        frames, live = read_backfill(ws)

    assert [f["event"]["sequence"] for f in frames] == [1]
    assert live["backfilled"] == 1


def test_health_counts_connected_subscribers(test_client):
    with test_client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"resume_from": []})
        read_backfill(ws)

        assert test_client.get("/health").json()["subscribers"] == 1
        assert test_client.get("/stats").json()["subscribers"] == 1
        assert test_client.get("/stats").json()["connections"]["live"] == 1


def test_binary_frame_during_handshake_falls_back_to_recent(test_client):
    test_client.post("/events", json=hook("UserPromptSubmit"))

    with test_client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_bytes(b"\x00\x01")
        frames, live = read_backfill(ws)

    assert [f["event"]["sequence"] for f in frames] == [1]
    assert live["backfilled"] == 1


def test_binary_frame_while_live_is_ignored(test_client):
    with test_client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"resume_from": []})
        read_backfill(ws)

        ws.send_bytes(b"\x00\x01")
        ws.send_text("ping")
        assert ws.receive_json() == {"type": "pong"}

        test_client.post("/events", json=hook("PreToolUse"))
        assert ws.receive_json()["event"]["sequence"] == 1


class ScriptedSocket:
    """Stand-in for a Starlette WebSocket driven directly by the test."""

    def __init__(self, fail_on_backfill_frame=None):
        self.application_state = WebSocketState.CONNECTED
        self.client_state = WebSocketState.CONNECTED
        self.sent = []
        self.close_code = None
        self.incoming = asyncio.Queue()
        self.hold_live_events = False
        self.release = asyncio.Event()
        self.holding = asyncio.Event()
        self.fail_on_backfill_frame = fail_on_backfill_frame
        self._backfill_frames = 0

    async def accept(self):
        pass

    async def receive(self):
        return await self.incoming.get()

    async def send_json(self, payload):
        if payload["type"] == "event" and payload["backfill"]:
            self._backfill_frames += 1
            if self._backfill_frames == self.fail_on_backfill_frame:
                self.client_state = WebSocketState.DISCONNECTED
                raise WebSocketDisconnect(1001)
        if payload["type"] == "event" and not payload["backfill"] and self.hold_live_events:
            self.holding.set()
            await self.release.wait()
        self.sent.append(payload)

    async def close(self, code=1000):
        self.application_state = WebSocketState.DISCONNECTED
        self.close_code = code

    def say(self, message):
        self.incoming.put_nowait({"type": "websocket.receive", "text": json.dumps(message)})

    def hang_up(self):
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})

    def types(self):
        return [frame["type"] for frame in self.sent]


async def wait_until(condition, timeout=2.0):
    async with asyncio.timeout(timeout):
        while not condition():
            await asyncio.sleep(0.01)


@pytest.fixture
def gateway(store, registry, hub):
    return SubscriptionGateway(
        store,
        registry,
        hub,
        backfill_limit=100,
        backfill_page_size=2,
        cursor_wait_seconds=0.2,
        heartbeat_seconds=60,
    )


@pytest.mark.asyncio
async def test_slow_client_gets_gap_then_newest_events(gateway, ingestion, hub):
    socket = ScriptedSocket()
    socket.say({"resume_from": []})
    serving = asyncio.create_task(gateway.serve(socket))
    await wait_until(lambda: "live" in socket.types())

    socket.hold_live_events = True
    await ingestion.submit(hook("PreToolUse"))
    await asyncio.wait_for(socket.holding.wait(), timeout=2)
    for _ in range(29):
        await ingestion.submit(hook("PostToolUse"))
    socket.release.set()
    await wait_until(
        lambda: any(f["type"] == "event" and f["event"]["sequence"] == 30 for f in socket.sent)
    )
    socket.hang_up()
    await serving

    after_live = socket.sent[socket.types().index("live") + 1 :]
    assert after_live[0]["event"]["sequence"] == 1
    gap = after_live[1]
    assert gap["type"] == "gap"
    assert gap["dropped"] == 19
    assert gap["resume_from"] == [{"app": "demo", "session_id": "s1", "sequence": 1}]
    assert [f["event"]["sequence"] for f in after_live[2:]] == list(range(21, 31))
    assert hub.subscriber_count == 0


@pytest.mark.asyncio
async def test_idle_connection_receives_heartbeat(store, registry, hub):
    gateway = SubscriptionGateway(
        store, registry, hub, cursor_wait_seconds=0.05, heartbeat_seconds=0.05
    )
    socket = ScriptedSocket()
    serving = asyncio.create_task(gateway.serve(socket))

    await wait_until(lambda: "ping" in socket.types())
    socket.hang_up()
    await serving

    assert socket.types()[:2] == ["connection", "live"]
    assert "ts" in socket.sent[socket.types().index("ping")]


@pytest.mark.asyncio
async def test_disconnect_during_backfill_only_ends_that_connection(gateway, ingestion, hub):
    for _ in range(5):
        await ingestion.submit(hook("PreToolUse"))

    watcher = ScriptedSocket()
    watcher.say({"resume_from": []})
    watching = asyncio.create_task(gateway.serve(watcher))
    await wait_until(lambda: "live" in watcher.types())

    leaver = ScriptedSocket(fail_on_backfill_frame=3)
    leaver.say({"resume_from": [{"app": "demo", "session_id": "s1", "sequence": 0}]})
    await asyncio.wait_for(gateway.serve(leaver), timeout=2)

    assert [f["event"]["sequence"] for f in leaver.sent if f["type"] == "event"] == [1, 2]
    assert "live" not in leaver.types()
    assert hub.subscriber_count == 1
    assert gateway.connection_count == 1

    event = await ingestion.submit(hook("PostToolUse"))
    assert event.sequence == 6
    await wait_until(
        lambda: any(f["type"] == "event" and f["event"]["sequence"] == 6 for f in watcher.sent)
    )

    watcher.hang_up()
    await watching
    assert hub.subscriber_count == 0
    assert gateway.connection_count == 0

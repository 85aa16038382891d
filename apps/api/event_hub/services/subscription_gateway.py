"""
Dashboard WebSocket connections: backfill from the store, then live fan-out.
"""

import asyncio
import json
from datetime import UTC, datetime
from enum import Enum

import structlog
from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from event_hub.errors import StoreUnavailable
from event_hub.schemas.events import Event, EventEnvelope, SubscribeRequest
from event_hub.services.broadcast_hub import BroadcastHub, Subscription
from event_hub.services.event_store import EventStore
from event_hub.services.session_registry import SessionRegistry

logger = structlog.get_logger()


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    BACKFILLING = "backfilling"
    LIVE = "live"
    CLOSED = "closed"


class _Connection:
    def __init__(self, websocket: WebSocket, subscription: Subscription) -> None:
        self.websocket = websocket
        self.subscription = subscription
        self.state = ConnectionState.CONNECTING
        # Highest sequence already delivered, per (app, session_id).
        self.cursor: dict[tuple[str, str], int] = {}
        self._send_lock = asyncio.Lock()

    async def send(self, payload: dict) -> bool:
        async with self._send_lock:
            return await _safe_send_json(self.websocket, payload)

    def claim(self, event: Event) -> bool:
        """Advance the cursor for ``event``; False if it was already delivered."""
        key = (event.app, event.session_id)
        if event.sequence <= self.cursor.get(key, 0):
            return False
        self.cursor[key] = event.sequence
        return True


class SubscriptionGateway:
    """Connection lifecycle: Connecting -> Backfilling -> Live -> Closed."""

    def __init__(
        self,
        store: EventStore,
        registry: SessionRegistry,
        hub: BroadcastHub,
        *,
        backfill_limit: int = 100,
        backfill_page_size: int = 500,
        cursor_wait_seconds: float = 0.5,
        heartbeat_seconds: float = 30.0,
    ) -> None:
        self.store = store
        self.registry = registry
        self.hub = hub
        self.backfill_limit = backfill_limit
        self.backfill_page_size = backfill_page_size
        self.cursor_wait_seconds = cursor_wait_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self._connections: dict[str, _Connection] = {}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def state_counts(self) -> dict[str, int]:
        """Open connections per lifecycle state."""
        counts = {
            state.value: 0 for state in ConnectionState if state is not ConnectionState.CLOSED
        }
        for conn in self._connections.values():
            if conn.state is not ConnectionState.CLOSED:
                counts[conn.state.value] += 1
        return counts

    async def serve(self, websocket: WebSocket) -> None:
        await websocket.accept()
        # Subscribe before reading history so nothing appended meanwhile is missed;
        # overlap between the two is removed by the connection cursor.
        subscription = self.hub.subscribe()
        conn = _Connection(websocket, subscription)
        self._connections[subscription.id] = conn
        structlog.contextvars.bind_contextvars(subscriber_id=subscription.id)
        logger.info("ws_connected")

        close_code = 1000
        try:
            hello = {
                "type": "connection",
                "subscriber_id": subscription.id,
                "message": "Connected to agent event hub",
            }
            if not await conn.send(hello):
                return

            request = await self._read_subscribe_request(websocket)
            conn.state = ConnectionState.BACKFILLING
            sent = await self._backfill(conn, request)
            if sent is None:
                return
            logger.info("ws_backfill_complete", events=sent)
            if not await conn.send({"type": "live", "backfilled": sent}):
                return

            conn.state = ConnectionState.LIVE
            await self._run_live(conn)
        except WebSocketDisconnect:
            logger.info("ws_disconnected", state=conn.state.value)
        except StoreUnavailable as exc:
            logger.error("ws_backfill_failed", error=exc.message)
            await conn.send({"type": "error", **exc.to_dict()})
            close_code = 1011
        finally:
            conn.state = ConnectionState.CLOSED
            self.hub.unsubscribe(subscription)
            self._connections.pop(subscription.id, None)
            await _safe_close(websocket, close_code)
            logger.info("ws_closed", missed=subscription.missed_total)
            structlog.contextvars.unbind_contextvars("subscriber_id")

    async def _read_subscribe_request(self, websocket: WebSocket) -> SubscribeRequest:
        try:
            raw_message = await asyncio.wait_for(
                _receive_text(websocket), timeout=self.cursor_wait_seconds
            )
        except TimeoutError:
            return SubscribeRequest()
        if raw_message is None:
            logger.warning("ws_invalid_subscribe_request", error="binary frame")
            return SubscribeRequest()

        try:
            return SubscribeRequest.model_validate_json(raw_message)
        except ValidationError as exc:
            logger.warning("ws_invalid_subscribe_request", error=str(exc))
            return SubscribeRequest()

    async def _backfill(self, conn: _Connection, request: SubscribeRequest) -> int | None:
        """Send stored history; returns the number sent, or None if the client went away."""
        sent = 0
        if request.resume_from is None:
            for event in await self.store.recent(self.backfill_limit):
                if not conn.claim(event):
                    continue
                if not await self._send_backfill(conn, event):
                    return None
                sent += 1
            return sent

        for cursor in request.resume_from:
            key = (cursor.app, cursor.session_id)
            conn.cursor[key] = max(conn.cursor.get(key, 0), cursor.sequence)
            since = cursor.sequence
            while True:
                page = await self.store.query(
                    app=cursor.app,
                    session_id=cursor.session_id,
                    since_sequence=since,
                    limit=self.backfill_page_size,
                )
                for event in page:
                    since = event.sequence
                    if not conn.claim(event):
                        continue
                    if not await self._send_backfill(conn, event):
                        return None
                    sent += 1
                if len(page) < self.backfill_page_size:
                    break
        return sent

    async def _send_backfill(self, conn: _Connection, event: Event) -> bool:
        envelope = EventEnvelope(
            event=event,
            session_state=self.registry.get(event.app, event.session_id),
            backfill=True,
        )
        return await conn.send(envelope.model_dump(mode="json"))

    async def _run_live(self, conn: _Connection) -> None:
        pump = asyncio.create_task(self._pump(conn))
        listen = asyncio.create_task(self._listen(conn))
        done, pending = await asyncio.wait({pump, listen}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            task.result()

    async def _pump(self, conn: _Connection) -> None:
        subscription = conn.subscription
        while True:
            item = await subscription.next_item(timeout=self.heartbeat_seconds)

            gap = subscription.take_gap()
            if gap is not None:
                logger.warning("ws_gap_reported", dropped=gap.dropped)
                if not await conn.send(gap.model_dump(mode="json")):
                    return

            if item is None:
                ping = {"type": "ping", "ts": datetime.now(UTC).isoformat()}
                if not await conn.send(ping):
                    return
                continue

            if isinstance(item, EventEnvelope) and not conn.claim(item.event):
                continue
            if not await conn.send(item.model_dump(mode="json")):
                return

    async def _listen(self, conn: _Connection) -> None:
        try:
            while True:
                raw_message = await _receive_text(conn.websocket)
                kind = _message_type(raw_message) if raw_message is not None else None
                if kind == "ping":
                    await conn.send({"type": "pong"})
                elif kind == "unsubscribe":
                    logger.info("ws_unsubscribe_requested")
                    return
                else:
                    logger.debug("ws_ignored_client_message", kind=kind)
        except WebSocketDisconnect:
            logger.info("ws_disconnected", state=conn.state.value)


async def _receive_text(websocket: WebSocket) -> str | None:
    """Next text frame from the client; None when it sent a binary frame."""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
    return message.get("text")


def _message_type(raw_message: str) -> str | None:
    if raw_message.strip() == "ping":
        return "ping"
    try:
        message = json.loads(raw_message)
    except json.JSONDecodeError:
        return None
    if not isinstance(message, dict):
        return None
    kind = message.get("type")
    return kind if isinstance(kind, str) else None


async def _safe_send_json(websocket: WebSocket, payload: dict) -> bool:
    try:
        await websocket.send_json(payload)
        return True
    except (RuntimeError, WebSocketDisconnect, OSError):
        return False


async def _safe_close(websocket: WebSocket, code: int) -> None:
    if (
        websocket.application_state != WebSocketState.CONNECTED
        or websocket.client_state != WebSocketState.CONNECTED
    ):
        return
    try:
        await websocket.close(code=code)
    except (RuntimeError, WebSocketDisconnect):
        return

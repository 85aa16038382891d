"""
In-process registry of agent sessions, derived from the event stream.
"""

import asyncio
from collections.abc import Callable, Iterable, Mapping
from contextlib import AbstractAsyncContextManager
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from event_hub.schemas.events import EventType
from event_hub.schemas.sessions import SessionCounts, SessionState, SessionStatus, StopReason
from event_hub.services.locks import KeyedLocks

logger = structlog.get_logger()

SessionKey = tuple[str, str]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class _SessionRecord:
    app: str
    session_id: str
    status: SessionStatus
    started_at: datetime
    last_event_at: datetime
    event_count: int = 0
    last_sequence: int = 0
    last_event_type: str | None = None
    stop_reason: StopReason | None = None

    def snapshot(self) -> SessionState:
        return SessionState(**asdict(self))


class SessionRegistry:
    """Owns session lifecycle state keyed by ``(app, session_id)``.

    Sessions are created lazily on their first event and are never removed.
    Callers that need a read-modify-write across an ``await`` take
    :meth:`lock` for the session key; the mutators themselves never suspend.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._sessions: dict[SessionKey, _SessionRecord] = {}
        self._locks = KeyedLocks()
        self._clock = clock or _utcnow

    def lock(self, app: str, session_id: str) -> AbstractAsyncContextManager[None]:
        return self._locks.hold((app, session_id))

    def observe_time(self, app: str, session_id: str) -> datetime:
        """Server receive time, never earlier than the session's last event."""
        now = self._clock()
        record = self._sessions.get((app, session_id))
        if record is not None and record.last_event_at > now:
            return record.last_event_at
        return now

    def record_event(
        self,
        app: str,
        session_id: str,
        event_type: EventType,
        observed_at: datetime,
        *,
        sequence: int | None = None,
    ) -> SessionState:
        key = (app, session_id)
        record = self._sessions.get(key)
        if record is None:
            record = _SessionRecord(
                app=app,
                session_id=session_id,
                status=SessionStatus.ACTIVE,
                started_at=observed_at,
                last_event_at=observed_at,
            )
            self._sessions[key] = record
            logger.info("session_started", app=app, session_id=session_id)

        record.event_count += 1
        record.last_sequence = sequence if sequence is not None else record.event_count
        record.last_event_type = event_type.value
        if observed_at > record.last_event_at:
            record.last_event_at = observed_at

        if event_type is EventType.STOP:
            if record.status is not SessionStatus.STOPPED:
                logger.info("session_stopped", app=app, session_id=session_id, reason="stop_event")
            record.status = SessionStatus.STOPPED
            record.stop_reason = "stop_event"
        elif record.status is SessionStatus.STOPPED:
            record.status = SessionStatus.ACTIVE
            record.stop_reason = None
            logger.info("session_reactivated", app=app, session_id=session_id)

        return record.snapshot()

    def sweep_idle(
        self, idle_timeout: timedelta, now: datetime | None = None
    ) -> list[SessionState]:
        """Stop every active session whose last event is older than ``idle_timeout``."""
        now = now or self._clock()
        stopped: list[SessionState] = []
        for record in self._sessions.values():
            if record.status is not SessionStatus.ACTIVE:
                continue
            if now - record.last_event_at < idle_timeout:
                continue
            record.status = SessionStatus.STOPPED
            record.stop_reason = "idle_timeout"
            stopped.append(record.snapshot())
        return stopped

    def hydrate(self, summaries: Iterable[Mapping[str, Any]]) -> int:
        """Rebuild state from stored per-session summaries, e.g. after a restart."""
        restored = 0
        for row in summaries:
            key = (row["app"], row["session_id"])
            if key in self._sessions:
                continue
            stopped = row.get("last_event_type") == EventType.STOP.value
            self._sessions[key] = _SessionRecord(
                app=row["app"],
                session_id=row["session_id"],
                status=SessionStatus.STOPPED if stopped else SessionStatus.ACTIVE,
                started_at=row["started_at"],
                last_event_at=row["last_event_at"],
                event_count=row["event_count"],
                last_sequence=row["last_sequence"],
                last_event_type=row.get("last_event_type"),
                stop_reason="stop_event" if stopped else None,
            )
            restored += 1
        return restored

    def get(self, app: str, session_id: str) -> SessionState | None:
        record = self._sessions.get((app, session_id))
        return record.snapshot() if record is not None else None

    def list_sessions(
        self, app: str | None = None, status: SessionStatus | None = None
    ) -> list[SessionState]:
        records = [
            record
            for record in self._sessions.values()
            if (app is None or record.app == app)
            and (status is None or record.status is status)
        ]
        records.sort(key=lambda record: record.last_event_at, reverse=True)
        return [record.snapshot() for record in records]

    def apps(self) -> list[str]:
        return sorted({app for app, _ in self._sessions})

    def counts(self) -> SessionCounts:
        active = sum(
            1 for record in self._sessions.values() if record.status is SessionStatus.ACTIVE
        )
        return SessionCounts(active=active, stopped=len(self._sessions) - active)

    def __len__(self) -> int:
        return len(self._sessions)


async def run_idle_sweep(
    registry: SessionRegistry,
    on_stopped: Callable[[SessionState], None],
    *,
    interval_seconds: float,
    idle_timeout_seconds: float,
) -> None:
    idle_timeout = timedelta(seconds=idle_timeout_seconds)
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            stopped = registry.sweep_idle(idle_timeout)
            for state in stopped:
                on_stopped(state)
            if stopped:
                logger.info("sessions_idled", count=len(stopped))
    except asyncio.CancelledError:
        return

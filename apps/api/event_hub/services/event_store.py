"""
Append-only event log backed by SQLAlchemy.
"""

import hashlib
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import and_, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from event_hub.db import create_session_factory
from event_hub.errors import StoreUnavailable
from event_hub.models.agent_event import AgentEvent, Base
from event_hub.schemas.events import Event, EventDraft, EventType
from event_hub.services.locks import KeyedLocks

logger = structlog.get_logger()

STORE_FAULTS = (SQLAlchemyError, OSError)


class EventStore:
    """Durable, append-only log of accepted events.

    ``append`` is the single place where sequence numbers are assigned. It
    serializes per ``(app, session_id)`` so numbering stays gapless under
    concurrent producers, while appends for unrelated sessions proceed
    independently.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._session_factory = create_session_factory(engine)
        self._locks = KeyedLocks()

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    async def init_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def append(self, draft: EventDraft, received_at: datetime) -> Event:
        """Persist ``draft`` as the next event of its session and return it."""
        async with self._locks.hold((draft.app, draft.session_id)):
            try:
                async with self._session_factory() as db:
                    sequence = await self._insert_next(db, draft, received_at)
            except STORE_FAULTS as exc:
                logger.error(
                    "event_store_append_failed",
                    app=draft.app,
                    session_id=draft.session_id,
                    error=str(exc),
                )
                raise StoreUnavailable("Event store is unavailable") from exc
        return draft.stamp(sequence, received_at)

    async def _insert_next(
        self, db: AsyncSession, draft: EventDraft, received_at: datetime
    ) -> int:
        if self.dialect == "postgresql":
            await db.execute(
                text("SELECT pg_advisory_xact_lock(:lock_key)"),
                {"lock_key": _lock_key_for_session(draft.app, draft.session_id)},
            )

        max_seq_result = await db.execute(
            select(func.max(AgentEvent.sequence)).where(
                AgentEvent.app == draft.app,
                AgentEvent.session_id == draft.session_id,
            )
        )
        next_seq = (max_seq_result.scalar_one_or_none() or 0) + 1

        db.add(
            AgentEvent(
                app=draft.app,
                session_id=draft.session_id,
                sequence=next_seq,
                event_type=draft.event_type.value,
                event_name=draft.event_name,
                payload=draft.payload,
                summary=draft.summary,
                received_at=received_at,
            )
        )
        await db.commit()
        return next_seq

    async def query(
        self,
        app: str | None = None,
        session_id: str | None = None,
        since_sequence: int | None = None,
        limit: int = 100,
        after: datetime | None = None,
    ) -> list[Event]:
        """Events matching the filters in delivery order.

        A single addressed session is ordered by ``sequence``; wider queries
        follow store insertion order, which preserves every session's own
        sequence order.
        """
        stmt = select(AgentEvent)
        if app is not None:
            stmt = stmt.where(AgentEvent.app == app)
        if session_id is not None:
            stmt = stmt.where(AgentEvent.session_id == session_id)
        if since_sequence is not None:
            stmt = stmt.where(AgentEvent.sequence > since_sequence)
        if after is not None:
            stmt = stmt.where(AgentEvent.received_at > _as_utc(after).astimezone(UTC))

        if app is not None and session_id is not None:
            stmt = stmt.order_by(AgentEvent.sequence.asc())
        else:
            stmt = stmt.order_by(AgentEvent.id.asc())
        stmt = stmt.limit(limit)

        rows = await self._fetch(stmt)
        return [_to_event(row) for row in rows]

    async def recent(
        self, limit: int, app: str | None = None, session_id: str | None = None
    ) -> list[Event]:
        """The latest ``limit`` events, oldest first."""
        stmt = select(AgentEvent)
        if app is not None:
            stmt = stmt.where(AgentEvent.app == app)
        if session_id is not None:
            stmt = stmt.where(AgentEvent.session_id == session_id)
        stmt = stmt.order_by(AgentEvent.id.desc()).limit(limit)
        rows = await self._fetch(stmt)
        return [_to_event(row) for row in reversed(rows)]

    async def session_summaries(self) -> list[dict[str, Any]]:
        per_session = (
            select(
                AgentEvent.app,
                AgentEvent.session_id,
                func.max(AgentEvent.sequence).label("last_sequence"),
                func.min(AgentEvent.received_at).label("started_at"),
                func.max(AgentEvent.received_at).label("last_event_at"),
                func.count(AgentEvent.id).label("event_count"),
            )
            .group_by(AgentEvent.app, AgentEvent.session_id)
            .subquery()
        )
        stmt = select(per_session, AgentEvent.event_type).join(
            AgentEvent,
            and_(
                AgentEvent.app == per_session.c.app,
                AgentEvent.session_id == per_session.c.session_id,
                AgentEvent.sequence == per_session.c.last_sequence,
            ),
        )
        try:
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                rows = result.all()
        except STORE_FAULTS as exc:
            raise StoreUnavailable("Event store is unavailable") from exc

        return [
            {
                "app": row.app,
                "session_id": row.session_id,
                "started_at": _as_utc(row.started_at),
                "last_event_at": _as_utc(row.last_event_at),
                "event_count": row.event_count,
                "last_sequence": row.last_sequence,
                "last_event_type": row.event_type,
            }
            for row in rows
        ]

    async def count(self) -> int:
        try:
            async with self._session_factory() as db:
                result = await db.execute(select(func.count(AgentEvent.id)))
                return result.scalar_one()
        except STORE_FAULTS as exc:
            raise StoreUnavailable("Event store is unavailable") from exc

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as db:
                await db.execute(text("SELECT 1"))
            return True
        except STORE_FAULTS:
            return False

    async def _fetch(self, stmt) -> list[AgentEvent]:
        try:
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                return list(result.scalars().all())
        except STORE_FAULTS as exc:
            logger.error("event_store_query_failed", error=str(exc))
            raise StoreUnavailable("Event store is unavailable") from exc


def _as_utc(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(UTC)
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _to_event(row: AgentEvent) -> Event:
    return Event(
        app=row.app,
        session_id=row.session_id,
        sequence=row.sequence,
        event_type=EventType.parse(row.event_type),
        event_name=row.event_name,
        payload=row.payload,
        summary=row.summary,
        received_at=_as_utc(row.received_at),
    )


def _lock_key_for_session(app: str, session_id: str) -> int:
    """Deterministic signed 64-bit advisory lock key for a session."""
    digest = hashlib.blake2b(f"{app}\x00{session_id}".encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") & ((1 << 63) - 1)

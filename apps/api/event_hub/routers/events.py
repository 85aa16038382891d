from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from event_hub.config import Settings
from event_hub.dependencies import get_ingestion, get_settings, get_store
from event_hub.errors import PayloadTooLarge
from event_hub.schemas.events import Event, SubmitResponse
from event_hub.services.event_store import EventStore
from event_hub.services.ingestion_service import IngestionService

router = APIRouter(prefix="/events", tags=["events"])


async def _read_bounded_body(request: Request, limit: int) -> bytes:
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        raise PayloadTooLarge(
            f"Event body is {declared} bytes, limit is {limit}",
            details={"size": int(declared), "limit": limit},
        )
    # Chunked bodies carry no length, so count while reading.
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise PayloadTooLarge(
                f"Event body exceeds the {limit} byte limit",
                details={"size": len(body), "limit": limit},
            )
    return bytes(body)


@router.post("", response_model=SubmitResponse)
async def submit_event(
    request: Request,
    ingestion: Annotated[IngestionService, Depends(get_ingestion)],
):
    body = await _read_bounded_body(request, ingestion.max_event_bytes)
    event = await ingestion.submit(body)
    return SubmitResponse(sequence=event.sequence)


@router.get("", response_model=list[Event])
async def list_events(
    store: Annotated[EventStore, Depends(get_store)],
    settings: Annotated[Settings, Depends(get_settings)],
    app: str | None = None,
    session_id: str | None = None,
    since_sequence: Annotated[int | None, Query(ge=0)] = None,
    after: datetime | None = None,
    limit: Annotated[int, Query(ge=1)] = 100,
    tail: bool = False,
):
    limit = min(limit, settings.query_limit_max)
    if tail:
        return await store.recent(limit, app=app, session_id=session_id)
    return await store.query(
        app=app,
        session_id=session_id,
        since_sequence=since_sequence,
        limit=limit,
        after=after,
    )

from collections.abc import Mapping
from typing import Any

import structlog

from event_hub.errors import EventValidationError, PayloadTooLarge
from event_hub.schemas.events import Event, EventType, validate_event
from event_hub.services.broadcast_hub import BroadcastHub
from event_hub.services.event_store import EventStore
from event_hub.services.session_registry import SessionRegistry

logger = structlog.get_logger()


class IngestionService:
    """validate -> append -> record session -> publish, once per submission.

    There is no deduplication: producers fire and forget, so every call is
    appended exactly once and a lost call is simply absent from the log.
    """

    def __init__(
        self,
        store: EventStore,
        registry: SessionRegistry,
        hub: BroadcastHub,
        *,
        max_event_bytes: int,
    ) -> None:
        self.store = store
        self.registry = registry
        self.hub = hub
        self.max_event_bytes = max_event_bytes

    async def submit(self, raw: bytes | str | Mapping[str, Any]) -> Event:
        try:
            draft = validate_event(raw, max_bytes=self.max_event_bytes)
        except (EventValidationError, PayloadTooLarge) as exc:
            logger.warning("event_rejected", code=exc.code, reason=exc.message)
            raise

        if draft.event_type is EventType.UNKNOWN:
            logger.debug("event_type_unrecognised", event_name=draft.event_name)

        # Held across append and publish so subscribers see a session's
        # events in the order they were appended.
        async with self.registry.lock(draft.app, draft.session_id):
            received_at = self.registry.observe_time(draft.app, draft.session_id)
            event = await self.store.append(draft, received_at)
            state = self.registry.record_event(
                draft.app,
                draft.session_id,
                draft.event_type,
                received_at,
                sequence=event.sequence,
            )
            self.hub.publish(event, state)

        logger.info(
            "event_ingested",
            app=event.app,
            session_id=event.session_id,
            event_type=event.event_name,
            sequence=event.sequence,
        )
        return event

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from event_hub.config import Settings, settings as default_settings
from event_hub.db import create_engine
from event_hub.errors import EventHubError
from event_hub.logging_config import setup_logging
from event_hub.middleware.correlation import CorrelationIdMiddleware
from event_hub.routers import events, health, sessions, ws
from event_hub.services.broadcast_hub import BroadcastHub
from event_hub.services.event_store import EventStore
from event_hub.services.ingestion_service import IngestionService
from event_hub.services.session_registry import SessionRegistry, run_idle_sweep
from event_hub.services.subscription_gateway import SubscriptionGateway

logger = structlog.get_logger()


async def handle_event_hub_error(request: Request, exc: EventHubError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level, json_logs=settings.log_json)
        logger.info("event_hub_starting", environment=settings.environment)

        store = EventStore(create_engine(settings.database_url))
        if settings.auto_create_schema:
            await store.init_schema()
        registry = SessionRegistry()
        restored = registry.hydrate(await store.session_summaries())
        hub = BroadcastHub(queue_size=settings.subscriber_queue_size)

        app.state.settings = settings
        app.state.store = store
        app.state.registry = registry
        app.state.hub = hub
        app.state.ingestion = IngestionService(
            store, registry, hub, max_event_bytes=settings.max_event_bytes
        )
        app.state.gateway = SubscriptionGateway(
            store,
            registry,
            hub,
            backfill_limit=settings.backfill_limit,
            backfill_page_size=settings.backfill_page_size,
            cursor_wait_seconds=settings.cursor_wait_seconds,
            heartbeat_seconds=settings.heartbeat_seconds,
        )
        sweeper = asyncio.create_task(
            run_idle_sweep(
                registry,
                hub.publish_session,
                interval_seconds=settings.idle_sweep_interval_seconds,
                idle_timeout_seconds=settings.idle_timeout_seconds,
            )
        )
        logger.info("event_hub_ready", sessions_restored=restored, dialect=store.dialect)
        try:
            yield
        finally:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
            await store.dispose()
            logger.info("event_hub_shutting_down")

    app = FastAPI(
        title="Agent Event Hub",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(EventHubError, handle_event_hub_error)

    app.include_router(health.router)
    app.include_router(events.router)
    app.include_router(sessions.router)
    app.include_router(ws.router)
    return app


app = create_app()

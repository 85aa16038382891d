import pytest
from httpx import ASGITransport, AsyncClient

from event_hub.config import Settings
from event_hub.db import create_engine
from event_hub.main import create_app
from event_hub.services.broadcast_hub import BroadcastHub
from event_hub.services.event_store import EventStore
from event_hub.services.ingestion_service import IngestionService
from event_hub.services.session_registry import SessionRegistry


# 1. Settings pointing at a throwaway SQLite file per test
@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'events.db'}",
        log_level="WARNING",
        cursor_wait_seconds=0.2,
        heartbeat_seconds=60,
        idle_sweep_interval_seconds=60,
    )


# 2. Components wired by hand for service-level tests
@pytest.fixture
async def store(tmp_path):
    event_store = EventStore(create_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}"))
    await event_store.init_schema()
    yield event_store
    await event_store.dispose()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def hub():
    return BroadcastHub(queue_size=10)


@pytest.fixture
def ingestion(store, registry, hub):
    return IngestionService(store, registry, hub, max_event_bytes=4096)


# 3. Full application with its lifespan entered
@pytest.fixture
async def app(settings):
    application = create_app(settings)
    async with application.router.lifespan_context(application):
        yield application


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

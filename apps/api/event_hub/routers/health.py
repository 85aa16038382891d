from typing import Annotated

from fastapi import APIRouter, Depends

from event_hub.dependencies import get_gateway, get_registry, get_store
from event_hub.services.event_store import EventStore
from event_hub.services.session_registry import SessionRegistry
from event_hub.services.subscription_gateway import SubscriptionGateway

router = APIRouter()


@router.get("/health")
async def health(
    store: Annotated[EventStore, Depends(get_store)],
    gateway: Annotated[SubscriptionGateway, Depends(get_gateway)],
):
    if await store.ping():
        status, store_state = "ok", "connected"
    else:
        status, store_state = "degraded", "disconnected"
    return {"status": status, "store": store_state, "subscribers": gateway.connection_count}


@router.get("/stats")
async def stats(
    store: Annotated[EventStore, Depends(get_store)],
    registry: Annotated[SessionRegistry, Depends(get_registry)],
    gateway: Annotated[SubscriptionGateway, Depends(get_gateway)],
):
    counts = registry.counts()
    return {
        "events": await store.count(),
        "sessions": {"active": counts.active, "stopped": counts.stopped},
        "apps": len(registry.apps()),
        "subscribers": gateway.connection_count,
        "connections": gateway.state_counts(),
    }

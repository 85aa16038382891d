from fastapi import Request

from event_hub.config import Settings
from event_hub.services.event_store import EventStore
from event_hub.services.ingestion_service import IngestionService
from event_hub.services.session_registry import SessionRegistry
from event_hub.services.subscription_gateway import SubscriptionGateway


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> EventStore:
    return request.app.state.store


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_ingestion(request: Request) -> IngestionService:
    return request.app.state.ingestion


def get_gateway(request: Request) -> SubscriptionGateway:
    return request.app.state.gateway

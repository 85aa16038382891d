from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from event_hub.dependencies import get_registry
from event_hub.schemas.sessions import SessionState, SessionStatus
from event_hub.services.session_registry import SessionRegistry

router = APIRouter(tags=["sessions"])


@router.get("/sessions", response_model=list[SessionState])
async def list_sessions(
    registry: Annotated[SessionRegistry, Depends(get_registry)],
    app: str | None = None,
    status: SessionStatus | None = None,
):
    return registry.list_sessions(app=app, status=status)


@router.get("/sessions/{app}/{session_id}", response_model=SessionState)
async def get_session(
    app: str,
    session_id: str,
    registry: Annotated[SessionRegistry, Depends(get_registry)],
):
    session = registry.get(app, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@router.get("/apps", response_model=list[str])
async def list_apps(registry: Annotated[SessionRegistry, Depends(get_registry)]):
    return registry.apps()

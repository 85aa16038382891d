from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict


class SessionStatus(str, Enum):
    ACTIVE = "active"
    STOPPED = "stopped"


StopReason = Literal["stop_event", "idle_timeout"]


class SessionState(BaseModel):
    """Snapshot of one agent session as derived from its events."""

    model_config = ConfigDict(frozen=True)

    app: str
    session_id: str
    status: SessionStatus
    started_at: datetime
    last_event_at: datetime
    event_count: int
    last_sequence: int
    last_event_type: str | None = None
    stop_reason: StopReason | None = None


class SessionCounts(BaseModel):
    active: int
    stopped: int

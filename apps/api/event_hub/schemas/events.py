import math
from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    JsonValue,
    StrictStr,
    ValidationError,
    field_validator,
)

from event_hub.errors import EventValidationError, PayloadTooLarge
from event_hub.schemas.sessions import SessionState


class EventType(str, Enum):
    USER_PROMPT_SUBMIT = "UserPromptSubmit"
    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"
    STOP = "Stop"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, name: str) -> "EventType":
        try:
            return cls(name)
        except ValueError:
            return cls.UNKNOWN


class EventSubmission(BaseModel):
    """Body posted by a producer hook."""

    app: StrictStr = Field(min_length=1, max_length=255)
    session_id: StrictStr = Field(min_length=1, max_length=255)
    event_type: StrictStr = Field(min_length=1, max_length=255)
    payload: JsonValue = Field(default_factory=dict)
    summary: StrictStr | None = Field(default=None, max_length=2000)

    @field_validator("app", "session_id", "event_type")
    @classmethod
    def require_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("payload")
    @classmethod
    def require_structured_payload(cls, value: JsonValue) -> JsonValue:
        if isinstance(value, str):
            raise ValueError("payload must be structured data, not a raw string")
        if _has_non_finite(value):
            raise ValueError("payload numbers must be finite")
        return value


def _has_non_finite(value: JsonValue) -> bool:
    if isinstance(value, float):
        return not math.isfinite(value)
    if isinstance(value, dict):
        return any(_has_non_finite(item) for item in value.values())
    if isinstance(value, list):
        return any(_has_non_finite(item) for item in value)
    return False


class EventDraft(BaseModel):
    """A validated submission that has not been assigned a sequence yet."""

    model_config = ConfigDict(frozen=True)

    app: str
    session_id: str
    event_type: EventType
    event_name: str
    payload: JsonValue = None
    summary: str | None = None

    def stamp(self, sequence: int, received_at: datetime) -> "Event":
        return Event(
            **self.model_dump(),
            sequence=sequence,
            received_at=received_at,
        )


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    app: str
    session_id: str
    sequence: int
    event_type: EventType
    event_name: str
    payload: JsonValue = None
    summary: str | None = None
    received_at: datetime


class ResumeCursor(BaseModel):
    app: str
    session_id: str
    sequence: int = Field(ge=0)


class SubscribeRequest(BaseModel):
    resume_from: list[ResumeCursor] | None = None


class EventEnvelope(BaseModel):
    type: Literal["event"] = "event"
    event: Event
    session_state: SessionState | None = None
    backfill: bool = False


class SessionUpdate(BaseModel):
    type: Literal["session"] = "session"
    session_state: SessionState


class GapMarker(BaseModel):
    type: Literal["gap"] = "gap"
    dropped: int
    resume_from: list[ResumeCursor] = Field(default_factory=list)


class SubmitResponse(BaseModel):
    sequence: int


def validate_event(raw: bytes | str | Mapping[str, Any], *, max_bytes: int) -> EventDraft:
    """Validate one raw submission into an :class:`EventDraft`.

    Accepts either the undecoded request body or an already-decoded mapping.
    Raises ``PayloadTooLarge`` when the serialized submission exceeds
    ``max_bytes`` and ``EventValidationError`` for anything malformed.
    Unrecognised ``event_type`` values are kept as ``EventType.UNKNOWN`` with
    the raw name preserved in ``event_name``.
    """
    try:
        if isinstance(raw, (bytes, bytearray, str)):
            encoded = raw.encode("utf-8") if isinstance(raw, str) else bytes(raw)
            if len(encoded) > max_bytes:
                raise PayloadTooLarge(
                    f"Event body is {len(encoded)} bytes, limit is {max_bytes}",
                    details={"size": len(encoded), "limit": max_bytes},
                )
            submission = EventSubmission.model_validate_json(encoded)
        else:
            submission = EventSubmission.model_validate(raw)
    except ValidationError as exc:
        raise EventValidationError(
            "Invalid event submission",
            details=exc.errors(include_url=False, include_context=False, include_input=False),
        ) from exc

    size = len(submission.model_dump_json().encode("utf-8"))
    if size > max_bytes:
        raise PayloadTooLarge(
            f"Event is {size} bytes once serialized, limit is {max_bytes}",
            details={"size": size, "limit": max_bytes},
        )

    return EventDraft(
        app=submission.app,
        session_id=submission.session_id,
        event_type=EventType.parse(submission.event_type),
        event_name=submission.event_type,
        payload=submission.payload,
        summary=submission.summary,
    )

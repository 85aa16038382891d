"""
Typed failures surfaced by the ingestion and query paths.

Each error knows the HTTP status and the machine-readable code it is rendered
with, so routers never translate exceptions by hand.
"""

from typing import Any


class EventHubError(Exception):
    """Base class for errors that are reported back to the caller."""

    code = "internal_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        if self.retryable:
            body["retryable"] = True
        return body


class EventValidationError(EventHubError):
    """Submission is malformed or is missing required fields."""

    code = "validation_error"
    status_code = 400


class PayloadTooLarge(EventHubError):
    """Serialized submission exceeds the configured size bound."""

    code = "payload_too_large"
    status_code = 413


class StoreUnavailable(EventHubError):
    """The storage layer failed; nothing was written for this request."""

    code = "store_unavailable"
    status_code = 503
    retryable = True

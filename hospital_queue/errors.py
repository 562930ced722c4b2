"""Error taxonomy and the shared error envelope.

Engine code raises `QueueError` subclasses. The MQTT service turns them into
`ErrorResponse` messages and the client turns those back into exceptions, so
both ends agree on the same `code` strings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ErrorResponse:
    code: str
    message: str

    def to_message(self, *, corr_id: str | None = None) -> dict[str, Any]:
        msg: dict[str, Any] = {"type": "error", "code": self.code, "message": self.message}
        if corr_id is not None:
            msg["corr_id"] = corr_id
        return msg


class QueueError(Exception):
    """Base class for failures reported back to the caller."""

    code = "internal_error"

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(self.code, str(self) or self.code)


class ValidationError(QueueError):
    """Malformed or missing request fields. Raised before any mutation."""

    code = "bad_request"


class NotFound(QueueError):
    code = "not_found"


class InvalidTransition(QueueError):
    """Requested status change is not the next step of the state machine."""

    code = "invalid_transition"


class StorageFailure(QueueError):
    """The record store failed. Never retried by the engine."""

    code = "storage_failure"


class DeliveryFailure(QueueError):
    """One observer could not be reached. Local to the broadcaster."""

    code = "delivery_failure"


_BY_CODE: dict[str, type[QueueError]] = {
    cls.code: cls
    for cls in (QueueError, ValidationError, NotFound, InvalidTransition, StorageFailure, DeliveryFailure)
}


def error_from_message(msg: dict[str, Any]) -> QueueError:
    """Rebuild the exception carried by an `{"type": "error"}` message."""
    cls = _BY_CODE.get(str(msg.get("code", "")), QueueError)
    return cls(str(msg.get("message", "")))

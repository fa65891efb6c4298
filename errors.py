"""Error taxonomy for queue operations.

Each error carries a stable ``code`` that the HTTP layer returns in the
``{"error": {"code": ..., "message": ...}}`` envelope, and the status code
it maps to.
"""

from __future__ import annotations

from typing import Any, Optional

BROADCAST_FAILURE = "BROADCAST_FAILURE"


class QueueError(Exception):
    code = "SERVER_ERROR"
    status_code = 500

    def __init__(self, message: str, *, data: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(QueueError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(QueueError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidStateError(QueueError):
    code = "INVALID_STATE"
    status_code = 409


class ConflictError(QueueError):
    code = "CONFLICT"
    status_code = 409


class AlreadyCheckedInError(ConflictError):
    """The phone already holds an active entry today; ``data`` is that entry."""

    code = "ALREADY_CHECKED_IN"


class EmptyQueueError(QueueError):
    code = "EMPTY_QUEUE"
    status_code = 404


class StoreUnavailableError(QueueError):
    code = "STORE_UNAVAILABLE"
    status_code = 503


class StoreConflictError(QueueError):
    """A concurrent writer won; nothing from this attempt was committed."""

    code = "CONFLICT"
    status_code = 409

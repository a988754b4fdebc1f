"""
Error taxonomy shared by the API and the worker processes.

Every failure that can cross a process boundary is an OrderError subclass carrying
a stable machine code, the HTTP status it maps to, a sanitized public message and
whether it is worth retrying. Driver messages and stack traces stay in the logs.
"""

from typing import Any


class OrderError(Exception):
    """Base class for all classified failures."""

    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False
    public_message = "Internal server error"

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None):
        self.message = message or self.public_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"message": self.message, "code": self.code}
        if self.details:
            error["details"] = self.details
        return error


# ---------------------------------------------------------------------------
# Client errors
# ---------------------------------------------------------------------------


class ValidationFailure(OrderError):
    """Untrusted input did not match the declared shape. Never retried."""

    code = "VALIDATION_ERROR"
    status_code = 400
    public_message = "Request validation failed"

    def __init__(self, violations, message: str | None = None):
        self.violations = tuple(violations)
        super().__init__(
            message,
            details={"violations": [v.to_dict() for v in self.violations]},
        )


class NotFound(OrderError):
    code = "NOT_FOUND"
    status_code = 404
    public_message = "Resource not found"


class AlreadyExists(OrderError):
    code = "ALREADY_EXISTS"
    status_code = 409
    public_message = "Resource already exists"


class VersionConflict(OrderError):
    """The stored version moved past the version the writer read."""

    code = "VERSION_CONFLICT"
    status_code = 409
    public_message = "The order was modified concurrently"


class InvalidTransition(OrderError):
    code = "INVALID_TRANSITION"
    status_code = 422
    public_message = "Invalid order status transition"


# ---------------------------------------------------------------------------
# Infrastructure errors
# ---------------------------------------------------------------------------


class StoreUnavailable(OrderError):
    """Transient store failure (connection dropped, pool exhausted, timeout)."""

    code = "STORE_UNAVAILABLE"
    retryable = True
    public_message = "Service temporarily unavailable"


class StoreRejected(OrderError):
    """Permanent store failure, e.g. a malformed key or a constraint the caller cannot fix."""

    code = "STORE_REJECTED"
    public_message = "Internal server error"


class PublishFailure(OrderError):
    """The event bus or queue did not accept a message."""

    code = "PUBLISH_FAILED"
    retryable = True
    public_message = "Internal server error"


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, OrderError) and exc.retryable

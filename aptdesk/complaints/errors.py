"""Error taxonomy for complaint lifecycle operations.

Every error carries an HTTP ``status_code`` and a machine readable ``code`` so the
API layer can render it without knowing the individual classes.
"""

from __future__ import annotations

from typing import Any


class ComplaintError(RuntimeError):
    """Base error for complaint service issues."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details


class ValidationError(ComplaintError):
    """Raised for malformed or semantically invalid input."""

    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(ComplaintError):
    status_code = 401
    code = "AUTHENTICATION_FAILED"


class AuthorizationError(ComplaintError):
    """Raised when the policy denies an action for non state related reasons."""

    status_code = 403
    code = "ROLE_FORBIDDEN"


class NotFoundError(ComplaintError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidTransitionError(ComplaintError):
    """Raised when the state machine rejects an event for the current status."""

    status_code = 409
    code = "INVALID_TRANSITION"

    def __init__(self, from_status: Any, event: Any, message: str | None = None) -> None:
        self.from_status = from_status
        self.event = event
        text = message or f"Cannot apply '{_value(event)}' to a complaint in status '{_value(from_status)}'"
        super().__init__(text, details={"from": _value(from_status), "event": _value(event)})


class ConcurrentModificationError(ComplaintError):
    """Raised when the stored version changed between load and save."""

    status_code = 409
    code = "CONCURRENT_MODIFICATION"


class ConflictError(ComplaintError):
    status_code = 409
    code = "CONFLICT"


class RateLimitError(ComplaintError):
    status_code = 429
    code = "RATE_LIMITED"


class InternalError(ComplaintError):
    status_code = 500
    code = "INTERNAL_ERROR"


def _value(item: Any) -> Any:
    return getattr(item, "value", item)

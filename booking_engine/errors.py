"""
Typed error taxonomy for the booking engine.

Every operation either returns its result or raises one of these. Guards are
evaluated before any write, so catching a ``BookingError`` means no state was
changed by the failed call (writes already in flight are rolled back with the
surrounding transaction).
"""

from __future__ import annotations

from typing import Any, Optional


class BookingError(Exception):
    """
    Base class for all errors surfaced to callers of the booking engine.

    Attributes:
        code: Stable machine-readable error code
        retryable: Whether the caller may retry the same request
        details: Extra structured context for the caller
    """

    code = "booking_error"
    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for an API or log payload."""
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(BookingError):
    """Malformed or missing request fields."""

    code = "validation_error"


class NotFound(ValidationError):
    """Referenced booking, resource or refund does not exist."""

    code = "not_found"


class ResourceConflict(BookingError):
    """Availability hold failed; retry with a different span."""

    code = "resource_conflict"
    retryable = True


class Unauthorized(BookingError):
    """Actor is not the booking's guest, host or an admin."""

    code = "unauthorized"


class InvalidTransition(BookingError):
    """State machine guard failed."""

    code = "invalid_transition"

    def __init__(
        self,
        message: str,
        current: Optional[str] = None,
        target: Optional[str] = None,
        **details: Any,
    ) -> None:
        super().__init__(message, current=current, target=target, **details)
        self.current = current
        self.target = target


class AlreadyCheckedIn(BookingError):
    """Check-in already recorded, or cancellation attempted after check-in."""

    code = "already_checked_in"


class UpstreamFailure(BookingError):
    """Payment gateway or catalog failed; retry with the same idempotency key."""

    code = "upstream_failure"
    retryable = True


class Inconsistent(BookingError):
    """Internal invariant violated. Alertable, never silently corrected."""

    code = "inconsistent"

"""
Booking error taxonomy.

Every failure surfaced by the scheduling and lifecycle layers is one of:

- ValidationError: malformed/incomplete input, fix and resubmit
- ConflictError: slot taken or appointment already moved by another actor,
  re-resolve state before trying again
- PolicyError: action not permitted (cancellation window, role), terminal
- TransientError: store or network unreachable, safe to retry
- SideEffectFailure: notification/email failed after a committed change,
  logged only
"""

from typing import Optional


class BookingError(Exception):
    """Base class for booking and lifecycle errors."""

    category: str = "error"
    default_code: str = "booking_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        result = {
            "error": self.category,
            "code": self.code,
            "detail": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(code='{self.code}', message='{self.message}')>"


class ValidationError(BookingError):
    """Input rejected as malformed or incomplete."""

    category = "validation"
    default_code = "invalid_input"


class ConflictError(BookingError):
    """State changed underneath the caller (slot taken, already transitioned)."""

    category = "conflict"
    default_code = "conflict"


class NotFoundError(ConflictError):
    """Referenced appointment does not exist (or is no longer visible)."""

    category = "not_found"
    default_code = "not_found"


class PolicyError(BookingError):
    """Action not permitted for this actor or at this time."""

    category = "policy"
    default_code = "forbidden"


class TransientError(BookingError):
    """Backend unreachable or failing; the call may be retried."""

    category = "transient"
    default_code = "connection_error"
    retryable = True


class SideEffectFailure(BookingError):
    """A notification or email could not be delivered after a committed change."""

    category = "side_effect"
    default_code = "side_effect_failed"
    retryable = True


# Store error codes -> taxonomy
_CONFLICT_CODES = {
    "slot_taken",
    "slot_unavailable",
    "same_day_conflict",
    "daily_limit_exceeded",
    "invalid_transition",
    "already_transitioned",
    "duplicate_submission",
    "submission_in_progress",
    "action_throttled",
}
_POLICY_CODES = {
    "outside_cancellation_window",
    "forbidden",
    "access_denied",
    "role_not_permitted",
}
_NOT_FOUND_CODES = {"not_found", "appointment_not_found"}


def error_from_code(code: Optional[str], message: Optional[str] = None) -> BookingError:
    """Map a store error code onto the taxonomy.

    Args:
        code: Error code returned by the store (may be None)
        message: Human-readable message from the store

    Returns:
        The matching BookingError instance (not raised)
    """
    code = code or "booking_failed"
    message = message or code.replace("_", " ").capitalize()

    if code in _CONFLICT_CODES:
        return ConflictError(message, code=code)
    if code in _POLICY_CODES:
        return PolicyError(message, code=code)
    if code in _NOT_FOUND_CODES:
        return NotFoundError(message, code=code)
    if code.startswith("invalid_") or code.startswith("missing_") or code == "too_many_services":
        return ValidationError(message, code=code)
    if code in ("connection_error", "timeout", "unavailable"):
        return TransientError(message, code=code)

    return BookingError(message, code=code)

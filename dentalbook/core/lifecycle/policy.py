"""Cancellation eligibility.

A patient may cancel only while more than the clinic's cancellation
window remains before the appointment starts. The instant exactly N hours
before the start is already inside the window.

Evaluated twice: here (to decide whether to offer the action) and by the
store (the authoritative gate).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from dentalbook.config import settings
from dentalbook.core.models import Appointment


def _now() -> datetime:
    """Local wall-clock time; appointments are stored in clinic local time."""
    return datetime.now()


def resolve_policy_hours(policy_hours: Optional[int]) -> int:
    """Clinic policy, or the configured default when none is set."""
    if policy_hours is None or policy_hours < 0:
        return settings.default_cancellation_policy_hours
    return policy_hours


def cancellation_deadline(appointment: Appointment, policy_hours: Optional[int]) -> datetime:
    """Last instant (exclusive) at which the appointment may be cancelled."""
    return appointment.starts_at - timedelta(hours=resolve_policy_hours(policy_hours))


def can_cancel(
    appointment: Appointment,
    policy_hours: Optional[int] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Whether the appointment may still be cancelled.

    True iff now < start - policy_hours and the appointment is still
    pending or confirmed.

    Args:
        appointment: Appointment to check
        policy_hours: Clinic cancellation window (default from settings)
        now: Current local time (defaults to datetime.now())
    """
    if not appointment.is_active:
        return False
    now = now or _now()
    return now < cancellation_deadline(appointment, policy_hours)


@dataclass
class CancellationDecision:
    """Eligibility plus an explanation suitable for the patient."""

    allowed: bool
    reason: str
    hours_until: float
    policy_hours: int

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "can_cancel": self.allowed,
            "reason": self.reason,
            "hours_until": self.hours_until,
            "policy_hours": self.policy_hours,
        }


def explain_cancellation(
    appointment: Appointment,
    policy_hours: Optional[int] = None,
    now: Optional[datetime] = None,
) -> CancellationDecision:
    """can_cancel with the reason spelled out."""
    now = now or _now()
    hours = resolve_policy_hours(policy_hours)
    hours_until = round((appointment.starts_at - now).total_seconds() / 3600, 1)

    if not appointment.is_active:
        reason = f"Cannot cancel a {appointment.status.value} appointment"
        allowed = False
    elif can_cancel(appointment, hours, now):
        reason = "Can be cancelled"
        allowed = True
    else:
        reason = f"Must cancel at least {hours} hours before the appointment"
        allowed = False

    return CancellationDecision(
        allowed=allowed,
        reason=reason,
        hours_until=hours_until,
        policy_hours=hours,
    )

"""Booking wizard steps."""

from datetime import date
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from dentalbook.core.scheduling.draft import BookingDraft


class WizardStep(str, Enum):
    """Steps of the booking wizard, in order."""

    CLINIC = "clinic"
    SERVICES = "services"
    DOCTOR = "doctor"
    DATETIME = "datetime"
    CONFIRM = "confirm"


STEP_ORDER: list[WizardStep] = [
    WizardStep.CLINIC,
    WizardStep.SERVICES,
    WizardStep.DOCTOR,
    WizardStep.DATETIME,
    WizardStep.CONFIRM,
]


def step_index(step: WizardStep) -> int:
    """Zero-based position of a step."""
    return STEP_ORDER.index(step)


def next_step(step: WizardStep) -> Optional[WizardStep]:
    """Step after this one, or None at the last step."""
    index = step_index(step)
    return STEP_ORDER[index + 1] if index + 1 < len(STEP_ORDER) else None


def previous_step(step: WizardStep) -> Optional[WizardStep]:
    """Step before this one, or None at the first step."""
    index = step_index(step)
    return STEP_ORDER[index - 1] if index > 0 else None


def is_at_or_past(step: WizardStep, reference: WizardStep) -> bool:
    return step_index(step) >= step_index(reference)


def validate_step(
    step: WizardStep,
    draft: "BookingDraft",
    today: date,
    max_services: int = 3,
    same_day_conflict: bool = False,
) -> Optional[str]:
    """Check a step's predicate.

    Args:
        step: Step to validate
        draft: Current selections
        today: Caller's local calendar day
        max_services: Service limit
        same_day_conflict: Whether the chosen date clashes with an
            existing appointment at the clinic

    Returns:
        A human-readable error, or None if the step is satisfied
    """
    if step == WizardStep.CLINIC:
        if not draft.clinic_id:
            return "Please select a clinic"

    elif step == WizardStep.SERVICES:
        count = len(draft.service_ids)
        if count == 0:
            return "Please select at least one service"
        if count > max_services:
            return f"You can select up to {max_services} services"

    elif step == WizardStep.DOCTOR:
        if not draft.doctor_id:
            return "Please select a doctor"

    elif step == WizardStep.DATETIME:
        if draft.appointment_date is None:
            return "Please select a date"
        if draft.appointment_date <= today:
            return "Please select a future date"
        if draft.appointment_time is None:
            return "Please select a time"
        if same_day_conflict:
            return "You already have an appointment at this clinic on this day"

    elif step == WizardStep.CONFIRM:
        for earlier in STEP_ORDER[:-1]:
            error = validate_step(earlier, draft, today, max_services, same_day_conflict)
            if error:
                return error

    return None

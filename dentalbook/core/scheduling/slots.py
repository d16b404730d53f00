"""Slot arithmetic: duration-aware overlap against a doctor's working day."""

from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional

from dentalbook.core.models import Appointment, AvailabilitySlot

DEFAULT_SLOT_MINUTES = 30
DEFAULT_WORK_START = time(9, 0)
DEFAULT_WORK_END = time(17, 0)


def total_duration(
    service_ids: Iterable[str],
    durations: dict[str, int],
    default: int = DEFAULT_SLOT_MINUTES,
) -> int:
    """Cumulative duration of the selected services.

    Consultation-only bookings (no services) take the default length.
    """
    minutes = sum(durations.get(service_id, default) for service_id in service_ids)
    return minutes or default


def overlaps(
    start: datetime,
    end: datetime,
    other_start: datetime,
    other_end: datetime,
) -> bool:
    """Half-open interval overlap: [start, end) vs [other_start, other_end)."""
    return start < other_end and other_start < end


def compute_slots(
    day: date,
    duration_minutes: int,
    existing: Iterable[Appointment],
    work_start: time = DEFAULT_WORK_START,
    work_end: time = DEFAULT_WORK_END,
    step_minutes: Optional[int] = None,
) -> list[AvailabilitySlot]:
    """Candidate start times for one doctor on one day.

    Candidates are spaced by the booking duration (or step_minutes) from
    the start of the working day. A candidate is available iff the whole
    [start, start + duration) window fits inside working hours and overlaps
    no active appointment already held by the doctor.

    Args:
        day: Calendar day
        duration_minutes: Length of the booking being placed
        existing: The doctor's appointments (inactive ones are ignored)
        work_start: Start of the working day
        work_end: End of the working day
        step_minutes: Spacing between candidates (defaults to duration)

    Returns:
        Ordered slots tagged available/unavailable
    """
    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be positive")

    step = timedelta(minutes=step_minutes or duration_minutes)
    length = timedelta(minutes=duration_minutes)
    day_start = datetime.combine(day, work_start)
    day_end = datetime.combine(day, work_end)

    busy = [
        (a.starts_at, a.ends_at)
        for a in existing
        if a.is_active and a.appointment_date == day
    ]

    slots: list[AvailabilitySlot] = []
    cursor = day_start
    while cursor + length <= day_end:
        end = cursor + length
        free = not any(overlaps(cursor, end, b_start, b_end) for b_start, b_end in busy)
        slots.append(AvailabilitySlot(time=cursor.time(), available=free))
        cursor += step

    return slots


def is_slot_free(
    start: datetime,
    duration_minutes: int,
    existing: Iterable[Appointment],
    ignore_id: Optional[str] = None,
) -> bool:
    """Whether a booking at start would collide with an active appointment."""
    end = start + timedelta(minutes=duration_minutes)
    for appointment in existing:
        if not appointment.is_active or appointment.id == ignore_id:
            continue
        if overlaps(start, end, appointment.starts_at, appointment.ends_at):
            return False
    return True

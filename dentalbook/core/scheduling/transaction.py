"""
Booking Transaction.

Submits a finalized draft as one store call. Client-side checks here are
a fast-fail only; the store re-validates everything and owns the
double-booking check. A concurrent second submission of the same draft is
refused while the first is in flight.

Post-booking side effects are handed to the lifecycle layer and can never
undo a committed appointment.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Awaitable, Callable, Optional

from dentalbook.config import settings
from dentalbook.core.errors import ConflictError, ValidationError
from dentalbook.core.models import Actor, Appointment
from dentalbook.core.scheduling.draft import BookingDraft
from dentalbook.infra.redis import ExpiringKeyStore, get_submission_guard_store
from dentalbook.infra.store import AppointmentStore

logger = logging.getLogger(__name__)

AfterBooking = Callable[[Actor, Appointment], Awaitable[None]]


@dataclass
class BookingResult:
    """Outcome of a successful submission."""

    appointment: Appointment
    message: str = "Appointment booked successfully. Awaiting clinic confirmation."

    @property
    def appointment_id(self) -> str:
        return self.appointment.id

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "success": True,
            "appointment_id": self.appointment.id,
            "status": self.appointment.status.value,
            "message": self.message,
            "appointment": self.appointment.to_dict(),
        }


class BookingTransaction:
    """Atomic booking submission."""

    def __init__(
        self,
        store: AppointmentStore,
        guard_store: Optional[ExpiringKeyStore] = None,
        after_booking: Optional[AfterBooking] = None,
        today: Callable[[], date] = date.today,
        max_services: Optional[int] = None,
        guard_ttl: Optional[float] = None,
    ):
        """Initialize transaction.

        Args:
            store: Store backend
            guard_store: In-flight guard storage (defaults to the Redis-backed one)
            after_booking: Best-effort hook run after commit
            today: Caller's local calendar day
            max_services: Service limit
            guard_ttl: Seconds before an abandoned guard auto-releases
        """
        self.store = store
        self._guard_store = guard_store
        self.after_booking = after_booking
        self._today = today
        self.max_services = max_services or settings.max_services_per_booking
        self.guard_ttl = guard_ttl or settings.submission_guard_ttl

    async def _guard(self) -> ExpiringKeyStore:
        if self._guard_store is None:
            self._guard_store = await get_submission_guard_store()
        return self._guard_store

    def prevalidate(self, draft: BookingDraft) -> None:
        """Fast-fail checks before the round trip.

        Raises:
            ValidationError: missing fields, too many services, date not in the future
        """
        missing = draft.missing_fields()
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                code="missing_fields",
                details={"fields": missing},
            )
        if len(draft.service_ids) > self.max_services:
            raise ValidationError(
                f"You can select up to {self.max_services} services",
                code="too_many_services",
            )
        if draft.appointment_date <= self._today():
            raise ValidationError("Please select a future date", code="invalid_date")

    async def submit(self, actor: Actor, draft: BookingDraft) -> BookingResult:
        """
        Submit a draft.

        Args:
            actor: Booking patient
            draft: Complete draft

        Returns:
            BookingResult with the pending appointment

        Raises:
            ValidationError: draft rejected (client or store)
            ConflictError: slot_taken, same_day_conflict or submission_in_progress
            PolicyError, TransientError: from the store
        """
        self.prevalidate(draft)

        guard = await self._guard()
        guard_key = f"{actor.id}:{draft.fingerprint()}"
        if not await guard.acquire(guard_key, self.guard_ttl):
            raise ConflictError(
                "This booking is already being submitted",
                code="submission_in_progress",
            )

        try:
            appointment = await self.store.submit_booking(
                actor,
                clinic_id=draft.clinic_id,
                doctor_id=draft.doctor_id,
                appointment_date=draft.appointment_date,
                appointment_time=draft.appointment_time,
                service_ids=list(draft.service_ids),
                symptoms=draft.symptoms,
                treatment_plan_id=draft.treatment_plan_id,
            )
        finally:
            await guard.release(guard_key)

        logger.info(
            f"Booked appointment {appointment.id} for patient {actor.id} "
            f"({draft.booking_type})"
        )

        if self.after_booking is not None:
            try:
                await self.after_booking(actor, appointment)
            except Exception as e:
                logger.error(f"Post-booking side effects failed for {appointment.id}: {e}")

        return BookingResult(appointment=appointment)

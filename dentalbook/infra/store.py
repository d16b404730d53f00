"""
Backing store interface.

The transactional store exposes constraint-checked server procedures.
Two backends implement them:
- StoreClient: HTTP calls to the remote store (production)
- InMemoryStore: in-process implementation (development, tests)

All methods raise BookingError subclasses on failure.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, time
from typing import Optional

from dentalbook.core.models import (
    Actor,
    Appointment,
    AppointmentStatus,
    AvailabilitySlot,
    Notification,
    TreatmentPlanProgress,
)


@dataclass
class TransitionOutcome:
    """What the store reports after a status-changing procedure."""

    appointment: Appointment
    message: str = ""
    treatment_progress: Optional[TreatmentPlanProgress] = None
    data: dict = field(default_factory=dict)


@dataclass
class AppointmentPage:
    """One page of listAppointments."""

    appointments: list[Appointment]
    total_count: int = 0
    has_more: bool = False


@dataclass
class CompletionDetails:
    """Optional payload for completing an appointment."""

    notes: Optional[str] = None
    services_completed: list[str] = field(default_factory=list)
    follow_up_required: bool = False
    follow_up_notes: Optional[str] = None
    treatment_plan_fields: Optional[dict] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "notes": self.notes,
            "services_completed": list(self.services_completed),
            "follow_up_required": self.follow_up_required,
            "follow_up_notes": self.follow_up_notes,
            "treatment_plan_fields": self.treatment_plan_fields,
        }


class AppointmentStore(ABC):
    """Server procedures consumed by the scheduling and lifecycle layers."""

    # === Availability ===

    @abstractmethod
    async def resolve_available_slots(
        self,
        actor: Actor,
        doctor_id: str,
        appointment_date: date,
        service_ids: list[str],
    ) -> list[AvailabilitySlot]:
        """Compute bookable slots for a doctor/day/service set."""

    # === Booking ===

    @abstractmethod
    async def submit_booking(
        self,
        actor: Actor,
        clinic_id: str,
        doctor_id: str,
        appointment_date: date,
        appointment_time: time,
        service_ids: list[str],
        symptoms: Optional[str] = None,
        treatment_plan_id: Optional[str] = None,
    ) -> Appointment:
        """Atomically create a pending appointment.

        Raises:
            ConflictError: slot taken or same-day conflict
            ValidationError: draft rejected by the store
        """

    # === Lifecycle ===

    @abstractmethod
    async def approve_appointment(
        self,
        actor: Actor,
        appointment_id: str,
        staff_notes: Optional[str] = None,
    ) -> TransitionOutcome:
        """pending -> confirmed."""

    @abstractmethod
    async def reject_appointment(
        self,
        actor: Actor,
        appointment_id: str,
        reason: str,
        category: Optional[str] = None,
        suggest_reschedule: bool = False,
        alternative_dates: Optional[list[date]] = None,
    ) -> TransitionOutcome:
        """pending -> cancelled, by staff, with a reason."""

    @abstractmethod
    async def complete_appointment(
        self,
        actor: Actor,
        appointment_id: str,
        details: Optional[CompletionDetails] = None,
    ) -> TransitionOutcome:
        """confirmed -> completed."""

    @abstractmethod
    async def mark_no_show(
        self,
        actor: Actor,
        appointment_id: str,
        notes: Optional[str] = None,
    ) -> TransitionOutcome:
        """confirmed -> no_show."""

    @abstractmethod
    async def cancel_appointment(
        self,
        actor: Actor,
        appointment_id: str,
        reason: str,
    ) -> TransitionOutcome:
        """pending/confirmed -> cancelled."""

    @abstractmethod
    async def can_cancel_appointment(self, actor: Actor, appointment_id: str) -> bool:
        """Authoritative cancellation-window check."""

    # === Reads ===

    @abstractmethod
    async def get_appointment(
        self,
        actor: Actor,
        appointment_id: str,
    ) -> Optional[Appointment]:
        """Fetch a single appointment visible to the actor."""

    @abstractmethod
    async def list_appointments(
        self,
        actor: Actor,
        status: Optional[list[AppointmentStatus]] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> AppointmentPage:
        """List appointments in the actor's scope."""

    @abstractmethod
    async def get_ongoing_treatments(
        self,
        actor: Actor,
        patient_id: str,
        clinic_id: Optional[str] = None,
    ) -> list[TreatmentPlanProgress]:
        """Treatment plans a new booking could be linked to."""

    # === Side-effect sinks ===

    @abstractmethod
    async def create_notification(self, notification: Notification) -> Notification:
        """Persist a notification record."""

    async def ping(self) -> bool:
        """Check the store is reachable."""
        return True

    async def close(self) -> None:
        """Release any held connections."""

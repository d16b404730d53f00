"""Booking draft and wizard session data."""

import json
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Optional
from uuid import uuid4

from dentalbook.core.models import (
    AvailabilitySlot,
    format_time,
    parse_date,
    parse_time,
    parse_timestamp,
)
from dentalbook.core.scheduling.state import WizardStep


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class BookingType:
    """How a booking relates to treatment."""

    TREATMENT_PLAN_FOLLOW_UP = "treatment_plan_follow_up"
    CONSULTATION_ONLY = "consultation_only"
    CONSULTATION_WITH_SERVICE = "consultation_with_service"


@dataclass
class BookingDraft:
    """The in-progress selection. Lives only as long as its wizard session."""

    clinic_id: Optional[str] = None
    service_ids: list[str] = field(default_factory=list)
    doctor_id: Optional[str] = None
    appointment_date: Optional[date] = None
    appointment_time: Optional[time] = None
    symptoms: Optional[str] = None
    treatment_plan_id: Optional[str] = None

    @property
    def booking_type(self) -> str:
        if self.treatment_plan_id:
            return BookingType.TREATMENT_PLAN_FOLLOW_UP
        if not self.service_ids:
            return BookingType.CONSULTATION_ONLY
        return BookingType.CONSULTATION_WITH_SERVICE

    def missing_fields(self) -> list[str]:
        """Required fields not yet filled."""
        missing = []
        if not self.clinic_id:
            missing.append("clinic_id")
        if not self.doctor_id:
            missing.append("doctor_id")
        if self.appointment_date is None:
            missing.append("appointment_date")
        if self.appointment_time is None:
            missing.append("appointment_time")
        return missing

    def fingerprint(self) -> str:
        """Identity of what is being booked, for duplicate-submission guards."""
        return ":".join([
            self.clinic_id or "",
            self.doctor_id or "",
            self.appointment_date.isoformat() if self.appointment_date else "",
            format_time(self.appointment_time) or "",
        ])

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "clinic_id": self.clinic_id,
            "service_ids": list(self.service_ids),
            "doctor_id": self.doctor_id,
            "appointment_date": self.appointment_date.isoformat() if self.appointment_date else None,
            "appointment_time": format_time(self.appointment_time),
            "symptoms": self.symptoms,
            "treatment_plan_id": self.treatment_plan_id,
            "booking_type": self.booking_type,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BookingDraft":
        """Create from dictionary."""
        return cls(
            clinic_id=data.get("clinic_id"),
            service_ids=list(data.get("service_ids") or []),
            doctor_id=data.get("doctor_id"),
            appointment_date=parse_date(data.get("appointment_date")),
            appointment_time=parse_time(data.get("appointment_time")),
            symptoms=data.get("symptoms"),
            treatment_plan_id=data.get("treatment_plan_id"),
        )


@dataclass
class WizardSession:
    """Everything the wizard needs to resume: step, draft and slot state.

    Stored in Redis under the owner's id; never outlives its TTL.
    """

    session_id: str = field(default_factory=lambda: str(uuid4()))
    actor_id: str = ""
    step: WizardStep = WizardStep.CLINIC
    draft: BookingDraft = field(default_factory=BookingDraft)

    # Slots for the current doctor/date/services, and their freshness
    available_slots: list[AvailabilitySlot] = field(default_factory=list)
    slots_generation: int = 0
    slots_stale: bool = True

    # Conflicting appointment on the chosen day, if the store reported one
    same_day_conflict: Optional[dict] = None

    # Treatment plans the draft may be linked to
    ongoing_treatments: list[dict] = field(default_factory=list)

    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps({
            "session_id": self.session_id,
            "actor_id": self.actor_id,
            "step": self.step.value,
            "draft": self.draft.to_dict(),
            "available_slots": [s.to_dict() for s in self.available_slots],
            "slots_generation": self.slots_generation,
            "slots_stale": self.slots_stale,
            "same_day_conflict": self.same_day_conflict,
            "ongoing_treatments": self.ongoing_treatments,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        })

    @classmethod
    def from_json(cls, data: str) -> "WizardSession":
        """Deserialize from JSON string."""
        obj = json.loads(data)
        return cls(
            session_id=obj["session_id"],
            actor_id=obj.get("actor_id", ""),
            step=WizardStep(obj.get("step", WizardStep.CLINIC.value)),
            draft=BookingDraft.from_dict(obj.get("draft") or {}),
            available_slots=[
                AvailabilitySlot.from_dict(s) for s in obj.get("available_slots", [])
            ],
            slots_generation=obj.get("slots_generation", 0),
            slots_stale=obj.get("slots_stale", True),
            same_day_conflict=obj.get("same_day_conflict"),
            ongoing_treatments=obj.get("ongoing_treatments", []),
            last_error=obj.get("last_error"),
            created_at=parse_timestamp(obj.get("created_at")) or _utcnow(),
            updated_at=parse_timestamp(obj.get("updated_at")) or _utcnow(),
        )

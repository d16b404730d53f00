"""
Domain models shared by the scheduling and lifecycle layers.

The backing store owns these records; everything here is a cache copy
that round-trips through to_dict/from_dict.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Optional, Union


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def parse_date(value: Union[str, date, None]) -> Optional[date]:
    """Parse an ISO calendar day ("2025-03-10")."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def parse_time(value: Union[str, time, None]) -> Optional[time]:
    """Parse a time of day ("09:45" or "09:45:00")."""
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    return time.fromisoformat(str(value))


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO timestamp, assuming UTC when no offset is given."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_time(value: Optional[time]) -> Optional[str]:
    """Format a time of day as HH:MM."""
    return value.strftime("%H:%M") if value else None


class AppointmentStatus(str, Enum):
    """Lifecycle states of an appointment."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class ActorRole(str, Enum):
    """Who is acting on the system."""

    PATIENT = "patient"
    STAFF = "staff"
    ADMIN = "admin"


class NotificationType(str, Enum):
    """Notification type tags."""

    APPOINTMENT_BOOKED = "appointment_booked"
    APPOINTMENT_CONFIRMED = "appointment_confirmed"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    APPOINTMENT_REJECTED = "appointment_rejected"
    APPOINTMENT_COMPLETED = "appointment_completed"
    APPOINTMENT_NO_SHOW = "appointment_no_show"
    TREATMENT_PLAN_IMPACT = "treatment_plan_impact"
    CONDITION_REPORT = "condition_report"


@dataclass(frozen=True)
class Actor:
    """The identity performing a call. Threaded explicitly, never global."""

    id: str
    role: ActorRole
    clinic_id: Optional[str] = None

    @property
    def is_patient(self) -> bool:
        return self.role == ActorRole.PATIENT

    @property
    def is_staff(self) -> bool:
        return self.role in (ActorRole.STAFF, ActorRole.ADMIN)

    def in_scope(self, patient_id: str, clinic_id: str) -> bool:
        """Whether a row owned by this patient and clinic is visible to the actor.

        Staff without a clinic are unscoped, like admins.
        """
        if self.role == ActorRole.PATIENT:
            return patient_id == self.id
        if self.role == ActorRole.STAFF:
            return not self.clinic_id or clinic_id == self.clinic_id
        return True

    def can_view(self, appointment: "Appointment") -> bool:
        """Whether an appointment is inside this actor's scope."""
        return self.in_scope(appointment.patient_id, appointment.clinic_id)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "role": self.role.value,
            "clinic_id": self.clinic_id,
        }


@dataclass
class TreatmentPlanLink:
    """An appointment counted as one numbered visit of a treatment plan."""

    treatment_plan_id: str
    visit_number: int = 1
    visit_purpose: Optional[str] = None
    is_completed: bool = False
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "TreatmentPlanLink":
        """Create from store response dict."""
        return cls(
            treatment_plan_id=data.get("treatment_plan_id", data.get("id", "")),
            visit_number=int(data.get("visit_number", 1) or 1),
            visit_purpose=data.get("visit_purpose"),
            is_completed=bool(data.get("is_completed", False)),
            is_active=bool(data.get("is_active", True)),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "treatment_plan_id": self.treatment_plan_id,
            "visit_number": self.visit_number,
            "visit_purpose": self.visit_purpose,
            "is_completed": self.is_completed,
            "is_active": self.is_active,
        }


@dataclass
class TreatmentPlanProgress:
    """Progress counters of a treatment plan."""

    treatment_plan_id: str
    treatment_name: str = ""
    visits_completed: int = 0
    total_visits_planned: Optional[int] = None
    needs_review: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "TreatmentPlanProgress":
        """Create from store response dict."""
        total = data.get("total_visits_planned")
        return cls(
            treatment_plan_id=data.get("treatment_plan_id", data.get("id", "")),
            treatment_name=data.get("treatment_name", ""),
            visits_completed=int(data.get("visits_completed", 0) or 0),
            total_visits_planned=int(total) if total is not None else None,
            needs_review=bool(data.get("needs_review", False)),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "treatment_plan_id": self.treatment_plan_id,
            "treatment_name": self.treatment_name,
            "visits_completed": self.visits_completed,
            "total_visits_planned": self.total_visits_planned,
            "needs_review": self.needs_review,
            "progress_percent": self.progress_percent,
        }

    @property
    def progress_percent(self) -> Optional[int]:
        if not self.total_visits_planned:
            return None
        return int(self.visits_completed / self.total_visits_planned * 100)


@dataclass
class Appointment:
    """Cache copy of an appointment record."""

    id: str
    clinic_id: str
    doctor_id: str
    patient_id: str
    appointment_date: date
    appointment_time: time
    duration_minutes: int = 30
    service_ids: list[str] = field(default_factory=list)
    symptoms: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.PENDING
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    rejection_category: Optional[str] = None
    completion_notes: Optional[str] = None
    cancellation_policy_hours: Optional[int] = None
    treatment_link: Optional[TreatmentPlanLink] = None
    patient_email: Optional[str] = None
    patient_name: Optional[str] = None
    clinic_email: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    # None when the source row carried no stamp
    updated_at: Optional[datetime] = field(default_factory=_utcnow)

    @property
    def starts_at(self) -> datetime:
        """Naive local start of the appointment (clinic wall clock)."""
        return datetime.combine(self.appointment_date, self.appointment_time)

    @property
    def ends_at(self) -> datetime:
        return self.starts_at + timedelta(minutes=self.duration_minutes)

    @property
    def is_active(self) -> bool:
        """Pending or confirmed (occupies its slot)."""
        return self.status in (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)

    @classmethod
    def from_dict(cls, data: dict) -> "Appointment":
        """Create from store response dict."""
        link = data.get("treatment_link") or data.get("treatment_plan_link")
        patient = data.get("patient") if isinstance(data.get("patient"), dict) else {}
        services = data.get("service_ids")
        if services is None:
            services = [
                s.get("id", s.get("service_id")) if isinstance(s, dict) else s
                for s in data.get("services", []) or []
            ]
        return cls(
            id=str(data.get("id", data.get("appointment_id", ""))),
            clinic_id=str(data.get("clinic_id", "")),
            doctor_id=str(data.get("doctor_id", "")),
            patient_id=str(data.get("patient_id", "")),
            appointment_date=parse_date(data.get("appointment_date", data.get("date"))),
            appointment_time=parse_time(data.get("appointment_time", data.get("time"))),
            duration_minutes=int(data.get("duration_minutes", 30) or 30),
            service_ids=[str(s) for s in services if s],
            symptoms=data.get("symptoms"),
            status=AppointmentStatus(data.get("status", "pending")),
            notes=data.get("notes"),
            cancellation_reason=data.get("cancellation_reason"),
            rejection_category=data.get("rejection_category"),
            completion_notes=data.get("completion_notes"),
            cancellation_policy_hours=data.get("cancellation_policy_hours"),
            treatment_link=TreatmentPlanLink.from_dict(link) if link else None,
            patient_email=data.get("patient_email") or patient.get("email"),
            patient_name=data.get("patient_name") or patient.get("name"),
            clinic_email=data.get("clinic_email"),
            created_at=parse_timestamp(data.get("created_at")) or _utcnow(),
            updated_at=parse_timestamp(data.get("updated_at")),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "clinic_id": self.clinic_id,
            "doctor_id": self.doctor_id,
            "patient_id": self.patient_id,
            "appointment_date": self.appointment_date.isoformat(),
            "appointment_time": format_time(self.appointment_time),
            "duration_minutes": self.duration_minutes,
            "service_ids": list(self.service_ids),
            "symptoms": self.symptoms,
            "status": self.status.value,
            "notes": self.notes,
            "cancellation_reason": self.cancellation_reason,
            "rejection_category": self.rejection_category,
            "completion_notes": self.completion_notes,
            "cancellation_policy_hours": self.cancellation_policy_hours,
            "treatment_link": self.treatment_link.to_dict() if self.treatment_link else None,
            "patient_email": self.patient_email,
            "patient_name": self.patient_name,
            "clinic_email": self.clinic_email,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class AvailabilitySlot:
    """A candidate start time and whether it can currently be booked."""

    time: time
    available: bool = True

    @classmethod
    def from_dict(cls, data: Union[dict, str]) -> "AvailabilitySlot":
        """Create from store response (dict or bare "HH:MM" string)."""
        if isinstance(data, str):
            return cls(time=parse_time(data), available=True)
        return cls(
            time=parse_time(data.get("time", data.get("start_time"))),
            available=bool(data.get("available", True)),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {"time": format_time(self.time), "available": self.available}


@dataclass
class Notification:
    """One-way message to a user, optionally about an appointment.

    Addressed either to a single user (user_id) or to the staff of a
    clinic (clinic_id).
    """

    notification_type: NotificationType
    title: str
    message: str
    user_id: Optional[str] = None
    clinic_id: Optional[str] = None
    appointment_id: Optional[str] = None
    id: Optional[str] = None
    is_read: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_dict(cls, data: dict) -> "Notification":
        """Create from store response dict."""
        return cls(
            id=data.get("id"),
            user_id=data.get("user_id"),
            clinic_id=data.get("clinic_id"),
            notification_type=NotificationType(
                data.get("notification_type", data.get("type", "appointment_booked"))
            ),
            title=data.get("title", ""),
            message=data.get("message", ""),
            appointment_id=data.get("appointment_id") or data.get("related_appointment_id"),
            is_read=bool(data.get("is_read", False)),
            metadata=data.get("metadata") or {},
            created_at=parse_timestamp(data.get("created_at")) or _utcnow(),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "clinic_id": self.clinic_id,
            "notification_type": self.notification_type.value,
            "title": self.title,
            "message": self.message,
            "appointment_id": self.appointment_id,
            "is_read": self.is_read,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }

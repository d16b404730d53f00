"""
In-process store backend.

Implements the store procedures against dictionaries for local
development and tests, enforcing the same invariants the remote store
does: no overlapping active appointments per doctor, one active
appointment per patient per clinic per day, lifecycle graph, cancellation
window, service limit and future dates. Mutations run under one
asyncio.Lock and are published to a realtime feed.
"""

import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional
from uuid import uuid4

from dentalbook.config import settings
from dentalbook.core.errors import (
    ConflictError,
    NotFoundError,
    PolicyError,
    ValidationError,
)
from dentalbook.core.lifecycle.policy import can_cancel
from dentalbook.core.lifecycle.transitions import TransitionAction, check_action
from dentalbook.core.lifecycle.treatment import (
    cascade_cancellation,
    cascade_completion,
    next_visit_number,
)
from dentalbook.core.models import (
    Actor,
    ActorRole,
    Appointment,
    AppointmentStatus,
    AvailabilitySlot,
    Notification,
    TreatmentPlanLink,
    TreatmentPlanProgress,
)
from dentalbook.core.scheduling.slots import (
    DEFAULT_SLOT_MINUTES,
    DEFAULT_WORK_END,
    DEFAULT_WORK_START,
    compute_slots,
    is_slot_free,
    total_duration,
)
from dentalbook.infra.realtime import (
    APPOINTMENTS_TABLE,
    NOTIFICATIONS_TABLE,
    EventType,
    RealtimeEvent,
    RealtimeFeed,
    get_in_memory_feed,
)
from dentalbook.infra.store import (
    AppointmentPage,
    AppointmentStore,
    CompletionDetails,
    TransitionOutcome,
)

logger = logging.getLogger(__name__)


def _copy(appointment: Appointment) -> Appointment:
    """Detached copy, so callers never alias stored rows."""
    return Appointment.from_dict(appointment.to_dict())


class InMemoryStore(AppointmentStore):
    """Dictionary-backed store with server-side constraint checks."""

    def __init__(
        self,
        feed: Optional[RealtimeFeed] = None,
        now: Optional[Callable[[], datetime]] = None,
        max_services: Optional[int] = None,
    ):
        """Initialize store.

        Args:
            feed: Realtime feed mutations are published to
            now: Local wall-clock source (defaults to datetime.now)
            max_services: Service limit per booking
        """
        self.feed = feed or get_in_memory_feed()
        self._now = now or datetime.now
        self.max_services = max_services or settings.max_services_per_booking
        self._lock = asyncio.Lock()

        self.clinics: dict[str, dict] = {}
        self.doctors: dict[str, dict] = {}
        self.services: dict[str, dict] = {}
        self.patients: dict[str, dict] = {}
        self.appointments: dict[str, Appointment] = {}
        self.plans: dict[str, TreatmentPlanProgress] = {}
        self.plan_owners: dict[str, tuple[str, str]] = {}
        self.plan_links: dict[str, list[TreatmentPlanLink]] = {}
        self.notifications: list[Notification] = []

    # === Seeding ===

    def add_clinic(
        self,
        clinic_id: str,
        name: str = "",
        email: Optional[str] = None,
        cancellation_policy_hours: Optional[int] = None,
    ) -> None:
        self.clinics[clinic_id] = {
            "name": name or clinic_id,
            "email": email,
            "cancellation_policy_hours": cancellation_policy_hours,
        }

    def add_doctor(
        self,
        doctor_id: str,
        clinic_id: str,
        name: str = "",
        work_start: time = DEFAULT_WORK_START,
        work_end: time = DEFAULT_WORK_END,
    ) -> None:
        self.doctors[doctor_id] = {
            "clinic_id": clinic_id,
            "name": name or doctor_id,
            "work_start": work_start,
            "work_end": work_end,
        }

    def add_service(
        self,
        service_id: str,
        duration_minutes: int = DEFAULT_SLOT_MINUTES,
        name: str = "",
        clinic_id: Optional[str] = None,
    ) -> None:
        self.services[service_id] = {
            "name": name or service_id,
            "duration_minutes": duration_minutes,
            "clinic_id": clinic_id,
        }

    def add_patient(self, patient_id: str, email: Optional[str] = None, name: Optional[str] = None) -> None:
        self.patients[patient_id] = {"email": email, "name": name}

    def add_treatment_plan(
        self,
        plan_id: str,
        patient_id: str,
        clinic_id: str,
        treatment_name: str = "",
        total_visits_planned: Optional[int] = None,
        visits_completed: int = 0,
    ) -> TreatmentPlanProgress:
        plan = TreatmentPlanProgress(
            treatment_plan_id=plan_id,
            treatment_name=treatment_name or plan_id,
            visits_completed=visits_completed,
            total_visits_planned=total_visits_planned,
        )
        self.plans[plan_id] = plan
        self.plan_owners[plan_id] = (patient_id, clinic_id)
        self.plan_links[plan_id] = []
        return plan

    def seed_appointment(self, appointment: Appointment) -> Appointment:
        """Insert a row directly, bypassing booking checks."""
        self.appointments[appointment.id] = appointment
        if appointment.treatment_link:
            self.plan_links.setdefault(
                appointment.treatment_link.treatment_plan_id, []
            ).append(appointment.treatment_link)
        return appointment

    # === Helpers ===

    def _today(self) -> date:
        return self._now().date()

    def _touch(self, appointment: Appointment) -> None:
        """Advance updated_at; strictly increasing per row."""
        stamp = datetime.now(timezone.utc)
        if appointment.updated_at is not None and stamp <= appointment.updated_at:
            stamp = appointment.updated_at + timedelta(microseconds=1)
        appointment.updated_at = stamp

    def _load(self, actor: Actor, appointment_id: str) -> Appointment:
        appointment = self.appointments.get(appointment_id)
        if appointment is None or not actor.can_view(appointment):
            raise NotFoundError("Appointment not found", code="appointment_not_found")
        return appointment

    def _policy_hours(self, clinic_id: str) -> Optional[int]:
        return self.clinics.get(clinic_id, {}).get("cancellation_policy_hours")

    def _doctor_appointments(self, doctor_id: str, day: date) -> list[Appointment]:
        return [
            a for a in self.appointments.values()
            if a.doctor_id == doctor_id and a.appointment_date == day
        ]

    def _durations(self) -> dict[str, int]:
        return {sid: s["duration_minutes"] for sid, s in self.services.items()}

    def _check_services(self, service_ids: list[str]) -> None:
        if len(service_ids) > self.max_services:
            raise ValidationError(
                f"Maximum {self.max_services} services allowed per appointment",
                code="too_many_services",
            )
        unknown = [sid for sid in service_ids if sid not in self.services]
        if unknown:
            raise ValidationError(
                f"Unknown services: {', '.join(unknown)}",
                code="invalid_service",
            )

    def _check_future(self, day: date) -> None:
        if day <= self._today():
            raise ValidationError(
                "Appointment date must be in the future",
                code="invalid_date",
            )

    async def _publish(self, table: str, event_type: EventType, new: Optional[dict], old: Optional[dict] = None) -> None:
        await self.feed.broadcast(RealtimeEvent(table=table, type=event_type, new=new, old=old))

    # === Availability ===

    async def resolve_available_slots(
        self,
        actor: Actor,
        doctor_id: str,
        appointment_date: date,
        service_ids: list[str],
    ) -> list[AvailabilitySlot]:
        doctor = self.doctors.get(doctor_id)
        if doctor is None:
            raise NotFoundError("Doctor not found", code="not_found")
        self._check_future(appointment_date)
        self._check_services(service_ids)

        duration = total_duration(service_ids, self._durations())
        return compute_slots(
            appointment_date,
            duration,
            self._doctor_appointments(doctor_id, appointment_date),
            work_start=doctor["work_start"],
            work_end=doctor["work_end"],
        )

    # === Booking ===

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
        if actor.role != ActorRole.PATIENT:
            raise PolicyError("Only patients can book appointments", code="role_not_permitted")

        async with self._lock:
            clinic = self.clinics.get(clinic_id)
            if clinic is None:
                raise ValidationError("Clinic not found", code="invalid_clinic")
            doctor = self.doctors.get(doctor_id)
            if doctor is None or doctor["clinic_id"] != clinic_id:
                raise ValidationError("Doctor not available at this clinic", code="invalid_doctor")
            self._check_services(service_ids)
            self._check_future(appointment_date)

            duration = total_duration(service_ids, self._durations())
            start = datetime.combine(appointment_date, appointment_time)
            end = start + timedelta(minutes=duration)
            if (
                appointment_time < doctor["work_start"]
                or end > datetime.combine(appointment_date, doctor["work_end"])
            ):
                raise ValidationError("Time is outside working hours", code="invalid_time")

            if not is_slot_free(start, duration, self._doctor_appointments(doctor_id, appointment_date)):
                raise ConflictError(
                    "This time slot was just booked. Please choose another time.",
                    code="slot_taken",
                )

            for existing in self.appointments.values():
                if (
                    existing.patient_id == actor.id
                    and existing.clinic_id == clinic_id
                    and existing.appointment_date == appointment_date
                    and existing.is_active
                ):
                    raise ConflictError(
                        "You already have an appointment at this clinic on this day",
                        code="same_day_conflict",
                        details={"conflicting_appointment_id": existing.id},
                    )

            link = None
            if treatment_plan_id:
                owner = self.plan_owners.get(treatment_plan_id)
                if owner is None or owner[0] != actor.id or owner[1] != clinic_id:
                    raise ValidationError(
                        "Treatment plan not found for this patient and clinic",
                        code="invalid_treatment_plan",
                    )
                links = self.plan_links.setdefault(treatment_plan_id, [])
                link = TreatmentPlanLink(
                    treatment_plan_id=treatment_plan_id,
                    visit_number=next_visit_number(links),
                    visit_purpose="Follow-up visit",
                )
                links.append(link)

            appointment = Appointment(
                id=str(uuid4()),
                clinic_id=clinic_id,
                doctor_id=doctor_id,
                patient_id=actor.id,
                appointment_date=appointment_date,
                appointment_time=appointment_time,
                duration_minutes=duration,
                service_ids=list(service_ids),
                symptoms=symptoms,
                status=AppointmentStatus.PENDING,
                cancellation_policy_hours=clinic["cancellation_policy_hours"],
                treatment_link=link,
                patient_email=self.patients.get(actor.id, {}).get("email"),
                patient_name=self.patients.get(actor.id, {}).get("name"),
                clinic_email=clinic["email"],
            )
            self.appointments[appointment.id] = appointment
            logger.info(f"Appointment {appointment.id} booked for {appointment.starts_at}")

            await self._publish(APPOINTMENTS_TABLE, EventType.INSERT, appointment.to_dict())
            return _copy(appointment)

    # === Lifecycle ===

    async def _transition(
        self,
        actor: Actor,
        appointment_id: str,
        action: TransitionAction,
        apply: Optional[Callable[[Appointment], Optional[TreatmentPlanProgress]]] = None,
        message: str = "",
        data: Optional[dict] = None,
    ) -> TransitionOutcome:
        async with self._lock:
            appointment = self._load(actor, appointment_id)
            target = check_action(action, appointment, actor)
            old = appointment.to_dict()

            progress = apply(appointment) if apply else None
            appointment.status = target
            self._touch(appointment)
            logger.info(
                f"Appointment {appointment_id}: {old['status']} -> {target.value} "
                f"by {actor.role.value} {actor.id}"
            )

            await self._publish(APPOINTMENTS_TABLE, EventType.UPDATE, appointment.to_dict(), old)
            return TransitionOutcome(
                appointment=_copy(appointment),
                message=message,
                treatment_progress=(
                    TreatmentPlanProgress.from_dict(progress.to_dict()) if progress else None
                ),
                data=data or {},
            )

    def _cancel_cascade(self, appointment: Appointment) -> Optional[TreatmentPlanProgress]:
        link = appointment.treatment_link
        if link is None or not link.is_active:
            return None
        plan = self.plans.get(link.treatment_plan_id)
        if plan is None:
            return None
        return cascade_cancellation(link, plan).progress

    async def approve_appointment(
        self,
        actor: Actor,
        appointment_id: str,
        staff_notes: Optional[str] = None,
    ) -> TransitionOutcome:
        def apply(appointment: Appointment) -> None:
            if staff_notes:
                appointment.notes = staff_notes

        return await self._transition(
            actor, appointment_id, TransitionAction.APPROVE, apply,
            message="Appointment confirmed",
        )

    async def reject_appointment(
        self,
        actor: Actor,
        appointment_id: str,
        reason: str,
        category: Optional[str] = None,
        suggest_reschedule: bool = False,
        alternative_dates: Optional[list[date]] = None,
    ) -> TransitionOutcome:
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", code="missing_reason")

        def apply(appointment: Appointment) -> Optional[TreatmentPlanProgress]:
            appointment.cancellation_reason = reason.strip()
            appointment.rejection_category = category or "staff_decision"
            return self._cancel_cascade(appointment)

        return await self._transition(
            actor, appointment_id, TransitionAction.REJECT, apply,
            message="Appointment rejected",
            data={
                "suggest_reschedule": suggest_reschedule,
                "alternative_dates": [d.isoformat() for d in alternative_dates or []],
            },
        )

    async def complete_appointment(
        self,
        actor: Actor,
        appointment_id: str,
        details: Optional[CompletionDetails] = None,
    ) -> TransitionOutcome:
        details = details or CompletionDetails()

        def apply(appointment: Appointment) -> Optional[TreatmentPlanProgress]:
            appointment.completion_notes = details.notes
            link = appointment.treatment_link
            if link is None or not link.is_active:
                return None
            plan = self.plans.get(link.treatment_plan_id)
            if plan is None:
                return None
            return cascade_completion(link, plan).progress

        return await self._transition(
            actor, appointment_id, TransitionAction.COMPLETE, apply,
            message="Appointment completed",
            data=details.to_dict(),
        )

    async def mark_no_show(
        self,
        actor: Actor,
        appointment_id: str,
        notes: Optional[str] = None,
    ) -> TransitionOutcome:
        def apply(appointment: Appointment) -> None:
            if notes:
                appointment.notes = notes

        return await self._transition(
            actor, appointment_id, TransitionAction.NO_SHOW, apply,
            message="Appointment marked as no-show",
        )

    async def cancel_appointment(
        self,
        actor: Actor,
        appointment_id: str,
        reason: str,
    ) -> TransitionOutcome:
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required", code="missing_reason")

        def apply(appointment: Appointment) -> Optional[TreatmentPlanProgress]:
            if actor.role == ActorRole.PATIENT and not can_cancel(
                appointment, self._policy_hours(appointment.clinic_id), self._now()
            ):
                raise PolicyError(
                    "This appointment can no longer be cancelled",
                    code="outside_cancellation_window",
                )
            appointment.cancellation_reason = reason.strip()
            return self._cancel_cascade(appointment)

        return await self._transition(
            actor, appointment_id, TransitionAction.CANCEL, apply,
            message="Appointment cancelled",
        )

    async def can_cancel_appointment(self, actor: Actor, appointment_id: str) -> bool:
        appointment = self._load(actor, appointment_id)
        return can_cancel(appointment, self._policy_hours(appointment.clinic_id), self._now())

    # === Reads ===

    async def get_appointment(
        self,
        actor: Actor,
        appointment_id: str,
    ) -> Optional[Appointment]:
        appointment = self.appointments.get(appointment_id)
        if appointment is None or not actor.can_view(appointment):
            return None
        return _copy(appointment)

    async def list_appointments(
        self,
        actor: Actor,
        status: Optional[list[AppointmentStatus]] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> AppointmentPage:
        rows = [
            a for a in self.appointments.values()
            if actor.can_view(a)
            and (not status or a.status in status)
            and (date_from is None or a.appointment_date >= date_from)
            and (date_to is None or a.appointment_date <= date_to)
        ]
        rows.sort(key=lambda a: a.starts_at)
        page = rows[offset:offset + limit]
        return AppointmentPage(
            appointments=[_copy(a) for a in page],
            total_count=len(rows),
            has_more=offset + len(page) < len(rows),
        )

    async def get_ongoing_treatments(
        self,
        actor: Actor,
        patient_id: str,
        clinic_id: Optional[str] = None,
    ) -> list[TreatmentPlanProgress]:
        if actor.role == ActorRole.PATIENT and actor.id != patient_id:
            raise PolicyError("You can only view your own treatments", code="forbidden")

        ongoing = []
        for plan_id, plan in self.plans.items():
            owner_patient, owner_clinic = self.plan_owners[plan_id]
            if owner_patient != patient_id:
                continue
            if clinic_id and owner_clinic != clinic_id:
                continue
            if plan.total_visits_planned and plan.visits_completed >= plan.total_visits_planned:
                continue
            ongoing.append(TreatmentPlanProgress.from_dict(plan.to_dict()))
        return ongoing

    # === Side-effect sinks ===

    async def create_notification(self, notification: Notification) -> Notification:
        notification.id = notification.id or str(uuid4())
        self.notifications.append(notification)
        await self._publish(NOTIFICATIONS_TABLE, EventType.INSERT, notification.to_dict())
        return notification

    def notifications_for(self, user_id: Optional[str] = None, clinic_id: Optional[str] = None) -> list[Notification]:
        """Notifications addressed to a user or a clinic."""
        return [
            n for n in self.notifications
            if (user_id is not None and n.user_id == user_id)
            or (clinic_id is not None and n.clinic_id == clinic_id)
        ]

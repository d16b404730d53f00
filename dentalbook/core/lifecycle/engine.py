"""
Lifecycle Transition Engine.

Each action reads the row from the store, checks it, and makes one
authoritative store call. The local cache only serves display: it is
updated optimistically first and rolled back (then refreshed from the
store) if the call fails. After a committed transition the engine emits side-effect
events (counter-party notification, optional email, treatment-plan impact)
to the dispatcher; their outcome never changes the reported result.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Awaitable, Callable, Optional

from dentalbook.core.appointments.cache import AppointmentCache
from dentalbook.core.errors import (
    BookingError,
    NotFoundError,
    PolicyError,
    TransientError,
    ValidationError,
)
from dentalbook.core.lifecycle import messages
from dentalbook.core.lifecycle.policy import (
    CancellationDecision,
    can_cancel,
    explain_cancellation,
    resolve_policy_hours,
)
from dentalbook.core.lifecycle.side_effects import (
    EmailMessage,
    SideEffectDispatcher,
    SideEffectEvent,
)
from dentalbook.core.lifecycle.transitions import TransitionAction, check_action
from dentalbook.core.models import (
    Actor,
    Appointment,
    Notification,
    TreatmentPlanProgress,
)
from dentalbook.core.scheduling.throttle import ActionThrottle
from dentalbook.infra.store import AppointmentStore, CompletionDetails, TransitionOutcome

logger = logging.getLogger(__name__)


# Message shown for each failure category
FAILURE_MESSAGES = {
    "validation": "Please check the details and try again.",
    "conflict": "This appointment was changed by someone else. The latest version has been loaded.",
    "not_found": "This appointment no longer exists.",
    "policy": "This action is not allowed.",
    "transient": "The booking system is temporarily unreachable. Please try again.",
}


@dataclass
class TransitionResult:
    """Explicit outcome of a lifecycle action."""

    success: bool
    message: str
    appointment: Optional[Appointment] = None
    treatment_progress: Optional[TreatmentPlanProgress] = None
    error: Optional[BookingError] = None

    @property
    def category(self) -> Optional[str]:
        return self.error.category if self.error else None

    @property
    def hint(self) -> Optional[str]:
        """Category-specific guidance for a failed action."""
        return FAILURE_MESSAGES.get(self.category) if self.error else None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        result = {
            "success": self.success,
            "message": self.message,
            "appointment": self.appointment.to_dict() if self.appointment else None,
        }
        if self.treatment_progress:
            result["treatment_progress"] = self.treatment_progress.to_dict()
        if self.error:
            result["error"] = self.error.to_dict()
            result["hint"] = self.hint
        return result


class LifecycleEngine:
    """
    Applies status transitions and orchestrates their side effects.

    Identity is passed explicitly to every call.
    """

    def __init__(
        self,
        store: AppointmentStore,
        dispatcher: SideEffectDispatcher,
        cache: Optional[AppointmentCache] = None,
        throttle: Optional[ActionThrottle] = None,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.cache = cache or AppointmentCache()
        self.throttle = throttle or ActionThrottle()
        self._now = now

    # === Actions ===

    async def approve(
        self,
        actor: Actor,
        appointment_id: str,
        staff_notes: Optional[str] = None,
    ) -> TransitionResult:
        """pending -> confirmed."""
        return await self._run(
            actor,
            TransitionAction.APPROVE,
            appointment_id,
            lambda: self.store.approve_appointment(actor, appointment_id, staff_notes),
            success_message="Appointment approved",
            side_effects=lambda appt, outcome: [
                messages.confirmed_for_patient(appt, staff_notes)
            ],
        )

    async def reject(
        self,
        actor: Actor,
        appointment_id: str,
        reason: str,
        category: Optional[str] = None,
        suggest_reschedule: bool = False,
        alternative_dates: Optional[list[date]] = None,
    ) -> TransitionResult:
        """pending -> cancelled, by staff, with a reason."""
        if not reason or not reason.strip():
            return self._failure(ValidationError("A rejection reason is required", code="missing_reason"))

        def notices(appt: Appointment, outcome: TransitionOutcome) -> list[Notification]:
            notes = [
                messages.rejected_for_patient(
                    appt,
                    reason.strip(),
                    category,
                    suggest_reschedule,
                    [d.isoformat() for d in alternative_dates or []],
                )
            ]
            if appt.treatment_link:
                notes.append(messages.treatment_impact(appt, outcome.treatment_progress, for_patient=True))
            return notes

        return await self._run(
            actor,
            TransitionAction.REJECT,
            appointment_id,
            lambda: self.store.reject_appointment(
                actor, appointment_id, reason.strip(), category, suggest_reschedule, alternative_dates
            ),
            success_message="Appointment rejected",
            side_effects=notices,
            optimistic={"cancellation_reason": reason.strip(), "rejection_category": category or "staff_decision"},
        )

    async def complete(
        self,
        actor: Actor,
        appointment_id: str,
        details: Optional[CompletionDetails] = None,
    ) -> TransitionResult:
        """confirmed -> completed."""
        details = details or CompletionDetails()
        return await self._run(
            actor,
            TransitionAction.COMPLETE,
            appointment_id,
            lambda: self.store.complete_appointment(actor, appointment_id, details),
            success_message="Appointment marked as completed",
            side_effects=lambda appt, outcome: [
                messages.completed_for_patient(appt, details.follow_up_required, details.follow_up_notes)
            ],
            optimistic={"completion_notes": details.notes},
        )

    async def mark_no_show(
        self,
        actor: Actor,
        appointment_id: str,
        notes: Optional[str] = None,
    ) -> TransitionResult:
        """confirmed -> no_show."""
        return await self._run(
            actor,
            TransitionAction.NO_SHOW,
            appointment_id,
            lambda: self.store.mark_no_show(actor, appointment_id, notes),
            success_message="Appointment marked as no-show",
            side_effects=lambda appt, outcome: [messages.no_show_for_patient(appt)],
        )

    async def cancel(
        self,
        actor: Actor,
        appointment_id: str,
        reason: str,
    ) -> TransitionResult:
        """pending/confirmed -> cancelled.

        Patients are held to the clinic's cancellation window; the check
        here only avoids a pointless round trip, the store enforces it.
        """
        if not reason or not reason.strip():
            return self._failure(ValidationError("A cancellation reason is required", code="missing_reason"))

        by_patient = actor.is_patient

        def notices(appt: Appointment, outcome: TransitionOutcome) -> list[Notification]:
            notes = [messages.cancelled_notice(appt, reason.strip(), cancelled_by_patient=by_patient)]
            if appt.treatment_link:
                notes.append(
                    messages.treatment_impact(appt, outcome.treatment_progress, for_patient=not by_patient)
                )
            return notes

        return await self._run(
            actor,
            TransitionAction.CANCEL,
            appointment_id,
            lambda: self.store.cancel_appointment(actor, appointment_id, reason.strip()),
            success_message="Appointment cancelled",
            side_effects=notices,
            optimistic={"cancellation_reason": reason.strip()},
        )

    async def can_cancel(self, actor: Actor, appointment_id: str) -> CancellationDecision:
        """Advisory cancellation check, used to decide whether to offer the action."""
        appointment = await self._fetch(actor, appointment_id)
        return explain_cancellation(
            appointment,
            appointment.cancellation_policy_hours,
            self._now(),
        )

    async def after_booking(self, actor: Actor, appointment: Appointment) -> None:
        """Post-booking side effects: staff notice and optional condition report."""
        self.cache.reconcile(appointment)
        notices = [messages.booked_for_staff(appointment)]
        if appointment.symptoms:
            notices.append(messages.condition_report_for_staff(appointment))
        self._emit(notices, appointment)

    # === Internals ===

    async def _fetch(self, actor: Actor, appointment_id: str) -> Appointment:
        """Current row from the store. Transitions are never checked against the cache."""
        appointment = await self.store.get_appointment(actor, appointment_id)
        if appointment is None:
            raise NotFoundError("Appointment not found", code="appointment_not_found")
        return self.cache.reconcile(appointment)

    async def _refetch(self, actor: Actor, appointment_id: str) -> Optional[Appointment]:
        """Reload truth after a failed call."""
        try:
            appointment = await self.store.get_appointment(actor, appointment_id)
        except TransientError as e:
            logger.warning(f"Could not refresh appointment {appointment_id}: {e}")
            return self.cache.get(appointment_id)
        if appointment is None:
            self.cache.remove(appointment_id)
            return None
        return self.cache.reconcile(appointment)

    def _failure(self, error: BookingError, appointment: Optional[Appointment] = None) -> TransitionResult:
        message = error.message or FAILURE_MESSAGES.get(error.category, "The action failed")
        return TransitionResult(success=False, message=message, appointment=appointment, error=error)

    async def _run(
        self,
        actor: Actor,
        action: TransitionAction,
        appointment_id: str,
        call: Callable[[], Awaitable[TransitionOutcome]],
        success_message: str,
        side_effects: Callable[[Appointment, TransitionOutcome], list[Notification]],
        optimistic: Optional[dict] = None,
    ) -> TransitionResult:
        try:
            current = await self._fetch(actor, appointment_id)
            target = check_action(action, current, actor)
            if (
                action == TransitionAction.CANCEL
                and actor.is_patient
                and not can_cancel(current, current.cancellation_policy_hours, self._now())
            ):
                hours = resolve_policy_hours(current.cancellation_policy_hours)
                raise PolicyError(
                    f"Appointments must be cancelled at least {hours} hours in advance",
                    code="outside_cancellation_window",
                )
            self.throttle.check((actor.id, action.value, appointment_id))
        except BookingError as e:
            logger.info(f"{action.value} on {appointment_id} refused: {e.code}")
            held = self.cache.get(appointment_id)
            return self._failure(e, held if held is not None and actor.can_view(held) else None)

        token = self.cache.apply_optimistic(appointment_id, status=target, **(optimistic or {}))

        try:
            outcome = await call()
        except BookingError as e:
            self.cache.rollback(token)
            logger.warning(f"{action.value} on {appointment_id} failed: {e.code} - {e.message}")
            truth = await self._refetch(actor, appointment_id)
            return self._failure(e, truth)

        appointment = self.cache.reconcile(outcome.appointment)
        logger.info(
            f"Appointment {appointment_id} {current.status.value} -> "
            f"{appointment.status.value} by {actor.role.value} {actor.id}"
        )

        try:
            self._emit(side_effects(appointment, outcome), appointment)
        except Exception as e:
            logger.error(f"Could not queue side effects for {appointment_id}: {e}")

        return TransitionResult(
            success=True,
            message=outcome.message or success_message,
            appointment=appointment,
            treatment_progress=outcome.treatment_progress,
        )

    def _emit(self, notices: list[Notification], appointment: Appointment) -> None:
        for notice in notices:
            self.dispatcher.emit(SideEffectEvent.for_notification(notice))

            recipient = appointment.patient_email if notice.user_id else appointment.clinic_email
            if recipient:
                self.dispatcher.emit(
                    SideEffectEvent.for_email(
                        EmailMessage(
                            to=recipient,
                            subject=notice.title,
                            body=messages.email_body(notice),
                            email_type=notice.notification_type.value,
                            data=notice.metadata,
                        ),
                        appointment_id=appointment.id,
                    )
                )

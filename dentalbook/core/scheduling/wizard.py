"""
Booking Wizard.

Strictly ordered steps: clinic -> services -> doctor -> datetime -> confirm.
advance() only moves forward when the current step's predicate holds;
retreat() always works except at the first step. Platform back navigation
goes through handle_back(), which maps it onto a step retreat and only lets
the platform leave the flow from the first step.

The wizard never talks to a navigation API directly: it tells an injected
NavigationAdapter which step was entered and whether the flow is exiting.

Whenever doctor, date or services change at or after the datetime step,
the slot list is invalidated and re-resolved. A slot response that arrives
after a newer invalidation is discarded.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, time
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from dentalbook.config import settings
from dentalbook.core.errors import (
    BookingError,
    ConflictError,
    TransientError,
    ValidationError,
)
from dentalbook.core.models import Actor, AvailabilitySlot
from dentalbook.core.scheduling.availability import AvailabilityResolver
from dentalbook.core.scheduling.draft import BookingDraft, WizardSession
from dentalbook.core.scheduling.state import (
    STEP_ORDER,
    WizardStep,
    is_at_or_past,
    next_step,
    previous_step,
    step_index,
    validate_step,
)
from dentalbook.infra.store import AppointmentStore

if TYPE_CHECKING:
    from dentalbook.core.scheduling.transaction import BookingResult, BookingTransaction

logger = logging.getLogger(__name__)


# === Navigation ===


class NavigationAction(str, Enum):
    """What the platform history should do."""

    PUSH = "push"
    REPLACE = "replace"
    EXIT = "exit"


@dataclass
class NavigationDirective:
    """One instruction for the platform's history stack."""

    action: NavigationAction
    step: Optional[WizardStep] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "action": self.action.value,
            "step": self.step.value if self.step else None,
        }


class NavigationAdapter(ABC):
    """Bridge between the wizard and a platform's back/forward history."""

    @abstractmethod
    def step_entered(self, step: WizardStep, replace: bool = False) -> None:
        """The wizard moved to step (push a history entry, or replace the current one)."""

    @abstractmethod
    def exit_flow(self) -> None:
        """Back was pressed at the first step; the platform may leave the flow."""


class HistoryNavigationAdapter(NavigationAdapter):
    """Collects history directives for a browser client to apply."""

    def __init__(self):
        self.directives: list[NavigationDirective] = []

    def step_entered(self, step: WizardStep, replace: bool = False) -> None:
        action = NavigationAction.REPLACE if replace else NavigationAction.PUSH
        self.directives.append(NavigationDirective(action=action, step=step))

    def exit_flow(self) -> None:
        self.directives.append(NavigationDirective(action=NavigationAction.EXIT))

    def drain(self) -> list[NavigationDirective]:
        """Return and clear collected directives."""
        directives, self.directives = self.directives, []
        return directives


class NullNavigationAdapter(NavigationAdapter):
    """For callers without platform history."""

    def step_entered(self, step: WizardStep, replace: bool = False) -> None:
        pass

    def exit_flow(self) -> None:
        pass


# === Wizard ===


class BookingWizard:
    """
    Finite-state booking wizard over a WizardSession.

    The session is plain data (persisted by WizardSessionManager); this
    class holds the rules.
    """

    def __init__(
        self,
        session: WizardSession,
        actor: Actor,
        resolver: AvailabilityResolver,
        store: Optional[AppointmentStore] = None,
        navigation: Optional[NavigationAdapter] = None,
        today: Callable[[], date] = date.today,
        max_services: Optional[int] = None,
    ):
        self.session = session
        self.actor = actor
        self.resolver = resolver
        self.store = store
        self.navigation = navigation or NullNavigationAdapter()
        self._today = today
        self.max_services = max_services or settings.max_services_per_booking

    # === State ===

    @property
    def step(self) -> WizardStep:
        return self.session.step

    @property
    def draft(self) -> BookingDraft:
        return self.session.draft

    @property
    def slots(self) -> list[AvailabilitySlot]:
        """Current slots; empty while stale."""
        if self.session.slots_stale:
            return []
        return list(self.session.available_slots)

    def validation_error(self, step: Optional[WizardStep] = None) -> Optional[str]:
        """Why a step's predicate fails, or None."""
        step = step or self.step
        error = validate_step(
            step,
            self.draft,
            self._today(),
            self.max_services,
            same_day_conflict=self.session.same_day_conflict is not None,
        )
        if error is None and step in (WizardStep.DATETIME, WizardStep.CONFIRM):
            if not self.session.slots_stale and not self._time_available(self.draft.appointment_time):
                return "The selected time is no longer available"
        return error

    @property
    def can_proceed(self) -> bool:
        return self.validation_error() is None

    @property
    def is_complete(self) -> bool:
        return self.validation_error(WizardStep.CONFIRM) is None

    @property
    def progress(self) -> dict:
        index = step_index(self.step)
        return {
            "step": self.step.value,
            "step_index": index,
            "total_steps": len(STEP_ORDER),
            "percent": int((index + 1) / len(STEP_ORDER) * 100),
            "max_services_reached": len(self.draft.service_ids) >= self.max_services,
            "is_complete": self.is_complete,
            "can_proceed": self.can_proceed,
            "booking_type": self.draft.booking_type,
        }

    def _time_available(self, value: Optional[time]) -> bool:
        return any(s.time == value and s.available for s in self.session.available_slots)

    def _move(self, step: WizardStep, replace: bool = False, notify: bool = True) -> None:
        self.session.step = step
        if notify:
            self.navigation.step_entered(step, replace=replace)

    # === Slots ===

    async def invalidate_slots(self, force: bool = False) -> None:
        """Drop current slots; re-resolve if at or past the datetime step."""
        self.session.slots_generation += 1
        self.session.available_slots = []
        self.session.slots_stale = True

        if is_at_or_past(self.step, WizardStep.DATETIME):
            await self.refresh_slots(force=force)

    async def refresh_slots(self, force: bool = False) -> list[AvailabilitySlot]:
        """Resolve slots for the current draft.

        Raises:
            TransientError: store unreachable (slots stay stale)
        """
        generation = self.session.slots_generation
        draft = self.draft

        slots = await self.resolver.resolve(
            self.actor,
            draft.doctor_id,
            draft.appointment_date,
            list(draft.service_ids),
            force=force,
        )

        if self.session.slots_generation != generation:
            logger.debug(f"Discarding stale slots for session {self.session.session_id}")
            return self.slots

        self.session.available_slots = slots
        self.session.slots_stale = False

        if draft.appointment_time and not self._time_available(draft.appointment_time):
            logger.info(
                f"Selected time {draft.appointment_time} no longer available, clearing"
            )
            draft.appointment_time = None

        return list(slots)

    # === Selections ===

    async def select_clinic(self, clinic_id: str) -> None:
        """Choose a clinic. Clears doctor, services, date and time."""
        if not clinic_id:
            raise ValidationError("Please select a clinic", code="missing_clinic")
        if clinic_id == self.draft.clinic_id:
            return

        self.session.draft = BookingDraft(clinic_id=clinic_id, symptoms=self.draft.symptoms)
        self.session.same_day_conflict = None
        self.session.ongoing_treatments = await self._load_ongoing_treatments(clinic_id)
        await self.invalidate_slots()

    async def _load_ongoing_treatments(self, clinic_id: str) -> list[dict]:
        if self.store is None or not self.actor.is_patient:
            return []
        try:
            treatments = await self.store.get_ongoing_treatments(
                self.actor, self.actor.id, clinic_id
            )
        except BookingError as e:
            logger.warning(f"Could not load ongoing treatments for {self.actor.id}: {e}")
            return []
        return [t.to_dict() for t in treatments]

    async def toggle_service(self, service_id: str) -> None:
        """Add or remove a service."""
        services = list(self.draft.service_ids)
        if service_id in services:
            services.remove(service_id)
        else:
            services.append(service_id)
        await self.set_services(services)

    async def set_services(self, service_ids: list[str]) -> None:
        """Replace the selected services.

        Raises:
            ValidationError: more than the allowed number of services
        """
        unique = list(dict.fromkeys(service_ids))
        if len(unique) > self.max_services:
            raise ValidationError(
                f"You can select up to {self.max_services} services",
                code="too_many_services",
            )
        if unique == self.draft.service_ids:
            return
        self.draft.service_ids = unique
        await self.invalidate_slots()

    async def select_doctor(self, doctor_id: str) -> None:
        """Choose a doctor. Clears date and time."""
        if not doctor_id:
            raise ValidationError("Please select a doctor", code="missing_doctor")
        if doctor_id == self.draft.doctor_id:
            return
        self.draft.doctor_id = doctor_id
        self.draft.appointment_date = None
        self.draft.appointment_time = None
        self.session.same_day_conflict = None
        await self.invalidate_slots()

    async def select_date(self, appointment_date: date) -> None:
        """Choose a day. Clears the time.

        Raises:
            ValidationError: day is today or in the past
        """
        if appointment_date <= self._today():
            raise ValidationError("Please select a future date", code="invalid_date")
        if appointment_date == self.draft.appointment_date:
            return
        self.draft.appointment_date = appointment_date
        self.draft.appointment_time = None
        self.session.same_day_conflict = None
        await self.invalidate_slots()

    async def select_time(self, appointment_time: time) -> None:
        """Choose a start time from the current slots.

        Raises:
            ValidationError: time is not an available slot
        """
        if self.session.slots_stale:
            await self.refresh_slots()
        if not self._time_available(appointment_time):
            raise ValidationError(
                "This time is not available. Please choose another time.",
                code="invalid_time",
            )
        self.draft.appointment_time = appointment_time

    def set_symptoms(self, symptoms: Optional[str]) -> None:
        self.draft.symptoms = symptoms.strip() if symptoms and symptoms.strip() else None

    def link_treatment_plan(self, treatment_plan_id: Optional[str]) -> None:
        """Link the booking to an ongoing treatment plan (None to unlink)."""
        if treatment_plan_id and self.session.ongoing_treatments:
            known = {t.get("treatment_plan_id") for t in self.session.ongoing_treatments}
            if treatment_plan_id not in known:
                raise ValidationError(
                    "Treatment plan is not available for this booking",
                    code="invalid_treatment_plan",
                )
        self.draft.treatment_plan_id = treatment_plan_id or None

    # === Navigation ===

    async def advance(self) -> WizardStep:
        """Move to the next step if the current one is satisfied.

        Raises:
            ValidationError: predicate fails (step unchanged)
        """
        if self.step == WizardStep.DATETIME and self.session.slots_stale:
            await self.refresh_slots()

        error = self.validation_error()
        if error:
            self.session.last_error = error
            raise ValidationError(error, code="step_incomplete", details={"step": self.step.value})

        upcoming = next_step(self.step)
        if upcoming is None:
            raise ValidationError("Already at the final step", code="invalid_step")

        self.session.last_error = None
        self._move(upcoming)

        if upcoming == WizardStep.DATETIME and self.session.slots_stale:
            await self.refresh_slots()

        return upcoming

    def retreat(self) -> bool:
        """Move to the previous step. False (no-op) at the first step."""
        previous = previous_step(self.step)
        if previous is None:
            return False
        self.session.last_error = None
        self._move(previous, replace=True)
        return True

    def handle_back(self) -> bool:
        """Platform back navigation.

        Returns:
            True if handled inside the wizard, False if the platform
            should leave the flow (first step)
        """
        previous = previous_step(self.step)
        if previous is None:
            self.navigation.exit_flow()
            return False
        # The platform has already popped its entry
        self.session.last_error = None
        self._move(previous, notify=False)
        return True

    def reset(self) -> None:
        """Discard the draft and return to the first step."""
        self.session.draft = BookingDraft()
        self.session.available_slots = []
        self.session.slots_stale = True
        self.session.slots_generation += 1
        self.session.same_day_conflict = None
        self.session.ongoing_treatments = []
        self.session.last_error = None
        self._move(WizardStep.CLINIC, replace=True)

    # === Submit ===

    async def submit(self, transaction: "BookingTransaction") -> "BookingResult":
        """Submit the draft from the confirm step.

        On success the draft is reset. A taken slot sends the wizard back
        to datetime with fresh slots; a same-day conflict is remembered
        until the date changes.

        Raises:
            ValidationError: not at confirm, or the draft is incomplete
            ConflictError: slot taken / same-day conflict / duplicate submit
            PolicyError, TransientError: from the store
        """
        if self.step != WizardStep.CONFIRM:
            raise ValidationError("Please review your booking before confirming", code="invalid_step")

        error = self.validation_error(WizardStep.CONFIRM)
        if error:
            self.session.last_error = error
            raise ValidationError(error, code="step_incomplete", details={"step": self.step.value})

        try:
            result = await transaction.submit(self.actor, self.draft)
        except ConflictError as e:
            self.session.last_error = e.message
            if e.code == "slot_taken":
                await self._return_to_datetime()
            elif e.code == "same_day_conflict":
                self.session.same_day_conflict = {
                    "appointment_id": e.details.get("conflicting_appointment_id"),
                    "appointment_date": self.draft.appointment_date.isoformat(),
                }
                self._move(WizardStep.DATETIME, replace=True)
            raise

        self.reset()
        return result

    async def _return_to_datetime(self) -> None:
        self.draft.appointment_time = None
        self._move(WizardStep.DATETIME, replace=True)
        try:
            await self.invalidate_slots(force=True)
        except TransientError as e:
            logger.warning(f"Slot refresh after conflict failed: {e}")

    def to_dict(self) -> dict:
        """Snapshot for API responses."""
        return {
            "session_id": self.session.session_id,
            "step": self.step.value,
            "draft": self.draft.to_dict(),
            "slots": [s.to_dict() for s in self.slots],
            "slots_stale": self.session.slots_stale,
            "same_day_conflict": self.session.same_day_conflict,
            "ongoing_treatments": self.session.ongoing_treatments,
            "last_error": self.session.last_error,
            "progress": self.progress,
        }

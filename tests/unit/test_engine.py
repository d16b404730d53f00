"""Tests for the lifecycle transition engine."""

from datetime import time
from unittest.mock import AsyncMock

import pytest

from dentalbook.core.errors import TransientError
from dentalbook.core.lifecycle.engine import LifecycleEngine
from dentalbook.core.lifecycle.side_effects import SideEffectDispatcher, SideEffectKind
from dentalbook.core.models import AppointmentStatus, NotificationType, TreatmentPlanLink
from dentalbook.core.scheduling.throttle import ActionThrottle
from dentalbook.infra.store import CompletionDetails
from tests.factories import NOW, OTHER_STAFF, PATIENT, STAFF, TODAY, make_appointment


@pytest.fixture
def dispatcher(store):
    return SideEffectDispatcher(store, email_client=None, retry_delay=0)


@pytest.fixture
def engine(store, dispatcher):
    return LifecycleEngine(
        store,
        dispatcher,
        throttle=ActionThrottle(cooldown_ms=0),
        now=lambda: NOW,
    )


def _types(notifications):
    return [n.notification_type for n in notifications]


class TestApprove:
    """pending -> confirmed."""

    @pytest.mark.asyncio
    async def test_approve_notifies_patient(self, store, engine, dispatcher):
        store.seed_appointment(make_appointment())

        result = await engine.approve(STAFF, "appt-1", "confirmed")

        assert result.success is True
        assert result.appointment.status == AppointmentStatus.CONFIRMED
        assert engine.cache.get("appt-1").status == AppointmentStatus.CONFIRMED

        await dispatcher.process_pending()
        notices = store.notifications_for(user_id="patient-1")
        assert _types(notices) == [NotificationType.APPOINTMENT_CONFIRMED]
        assert "confirmed" in notices[0].message

    @pytest.mark.asyncio
    async def test_patient_cannot_approve(self, store, engine):
        store.seed_appointment(make_appointment())

        result = await engine.approve(PATIENT, "appt-1")

        assert result.success is False
        assert result.category == "policy"
        assert store.appointments["appt-1"].status == AppointmentStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_appointment(self, engine):
        result = await engine.approve(STAFF, "missing")

        assert result.success is False
        assert result.category == "not_found"

    @pytest.mark.asyncio
    async def test_other_clinic_sees_not_found(self, store, engine):
        store.seed_appointment(make_appointment())

        result = await engine.approve(OTHER_STAFF, "appt-1")

        assert result.category == "not_found"


class TestRollback:
    """Optimistic updates are undone when the store refuses."""

    @pytest.mark.asyncio
    async def test_transient_failure_rolls_back(self, store, engine, dispatcher):
        store.seed_appointment(make_appointment())
        store.approve_appointment = AsyncMock(side_effect=TransientError("store down", code="unavailable"))

        result = await engine.approve(STAFF, "appt-1")

        assert result.success is False
        assert result.category == "transient"
        assert result.error.retryable is True
        assert result.appointment.status == AppointmentStatus.PENDING
        assert engine.cache.get("appt-1").status == AppointmentStatus.PENDING
        assert not engine.cache.is_provisional("appt-1")
        assert dispatcher.queue.empty()

    @pytest.mark.asyncio
    async def test_stale_cache_refreshed_on_conflict(self, store, engine):
        store.seed_appointment(make_appointment())
        await engine.can_cancel(STAFF, "appt-1")  # warms the cache with pending
        store.appointments["appt-1"].status = AppointmentStatus.CONFIRMED

        result = await engine.approve(STAFF, "appt-1")

        assert result.success is False
        assert result.category == "conflict"
        assert result.hint.startswith("This appointment was changed")
        assert result.appointment.status == AppointmentStatus.CONFIRMED


    @pytest.mark.asyncio
    async def test_store_change_behind_cache_is_honoured(self, store, engine):
        store.seed_appointment(make_appointment())
        await engine.can_cancel(STAFF, "appt-1")  # caches the pending row
        await store.approve_appointment(STAFF, "appt-1", None)

        result = await engine.complete(STAFF, "appt-1", CompletionDetails())

        assert result.success is True
        assert result.appointment.status == AppointmentStatus.COMPLETED
        assert engine.cache.get("appt-1").status == AppointmentStatus.COMPLETED


class TestReject:
    """Staff rejection."""

    @pytest.mark.asyncio
    async def test_reason_required(self, store, engine):
        store.seed_appointment(make_appointment())

        result = await engine.reject(STAFF, "appt-1", "  ")

        assert result.category == "validation"
        assert result.error.code == "missing_reason"

    @pytest.mark.asyncio
    async def test_reject_with_treatment_plan_sends_impact_notice(self, store, engine, dispatcher):
        store.add_treatment_plan("plan-1", "patient-1", "clinic-1", "Implant", total_visits_planned=3, visits_completed=1)
        store.seed_appointment(make_appointment(
            treatment_link=TreatmentPlanLink(treatment_plan_id="plan-1", visit_number=2),
        ))

        result = await engine.reject(STAFF, "appt-1", "doctor unavailable", category="doctor_unavailable")

        assert result.success is True
        assert result.appointment.status == AppointmentStatus.CANCELLED
        assert result.treatment_progress.visits_completed == 1

        await dispatcher.process_pending()
        assert _types(store.notifications_for(user_id="patient-1")) == [
            NotificationType.APPOINTMENT_REJECTED,
            NotificationType.TREATMENT_PLAN_IMPACT,
        ]


class TestCompleteAndNoShow:
    """Outcomes of confirmed appointments."""

    @pytest.mark.asyncio
    async def test_complete_counts_visit(self, store, engine):
        store.add_treatment_plan("plan-1", "patient-1", "clinic-1", total_visits_planned=2, visits_completed=1)
        store.seed_appointment(make_appointment(
            status=AppointmentStatus.CONFIRMED,
            treatment_link=TreatmentPlanLink(treatment_plan_id="plan-1", visit_number=2),
        ))

        result = await engine.complete(STAFF, "appt-1", CompletionDetails(notes="all good"))

        assert result.success is True
        assert result.appointment.completion_notes == "all good"
        assert result.treatment_progress.visits_completed == 2

    @pytest.mark.asyncio
    async def test_complete_pending_is_conflict(self, store, engine):
        store.seed_appointment(make_appointment())

        result = await engine.complete(STAFF, "appt-1")

        assert result.category == "conflict"
        assert result.appointment.status == AppointmentStatus.PENDING

    @pytest.mark.asyncio
    async def test_no_show(self, store, engine, dispatcher):
        store.seed_appointment(make_appointment(status=AppointmentStatus.CONFIRMED))

        result = await engine.mark_no_show(STAFF, "appt-1", "no call")

        assert result.appointment.status == AppointmentStatus.NO_SHOW
        await dispatcher.process_pending()
        assert _types(store.notifications_for(user_id="patient-1")) == [NotificationType.APPOINTMENT_NO_SHOW]


class TestCancel:
    """Cancellation by patients and staff."""

    @pytest.mark.asyncio
    async def test_patient_cancel_notifies_clinic(self, store, engine, dispatcher):
        store.seed_appointment(make_appointment())

        result = await engine.cancel(PATIENT, "appt-1", "feeling better")

        assert result.success is True
        await dispatcher.process_pending()
        assert _types(store.notifications_for(clinic_id="clinic-1")) == [NotificationType.APPOINTMENT_CANCELLED]

    @pytest.mark.asyncio
    async def test_patient_inside_window_refused_without_store_call(self, store, engine):
        store.seed_appointment(make_appointment(day=TODAY, at=time(10, 0)))
        store.cancel_appointment = AsyncMock()

        result = await engine.cancel(PATIENT, "appt-1", "running late")

        assert result.success is False
        assert result.category == "policy"
        assert result.error.code == "outside_cancellation_window"
        store.cancel_appointment.assert_not_called()

    @pytest.mark.asyncio
    async def test_staff_cancel_inside_window(self, store, engine, dispatcher):
        store.seed_appointment(make_appointment(day=TODAY, at=time(10, 0)))

        result = await engine.cancel(STAFF, "appt-1", "doctor sick")

        assert result.success is True
        await dispatcher.process_pending()
        assert _types(store.notifications_for(user_id="patient-1")) == [NotificationType.APPOINTMENT_CANCELLED]

    @pytest.mark.asyncio
    async def test_can_cancel_decision(self, store, engine):
        store.seed_appointment(make_appointment(day=TODAY, at=time(10, 0)))

        decision = await engine.can_cancel(PATIENT, "appt-1")

        assert decision.allowed is False
        assert decision.hours_until == 2.0


class TestThrottleAndSideEffects:
    """Action pacing and side-effect isolation."""

    @pytest.mark.asyncio
    async def test_repeated_action_throttled(self, store, dispatcher):
        engine = LifecycleEngine(store, dispatcher, throttle=ActionThrottle(cooldown_ms=60_000), now=lambda: NOW)
        store.seed_appointment(make_appointment())
        store.approve_appointment = AsyncMock(side_effect=TransientError("store down", code="unavailable"))

        await engine.approve(STAFF, "appt-1")
        result = await engine.approve(STAFF, "appt-1")

        assert result.error.code == "action_throttled"
        assert store.approve_appointment.await_count == 1

    @pytest.mark.asyncio
    async def test_refused_attempt_does_not_start_cooldown(self, store, dispatcher):
        engine = LifecycleEngine(store, dispatcher, throttle=ActionThrottle(cooldown_ms=60_000), now=lambda: NOW)
        store.seed_appointment(make_appointment())

        refused = await engine.complete(STAFF, "appt-1", CompletionDetails())
        store.appointments["appt-1"].status = AppointmentStatus.CONFIRMED
        retried = await engine.complete(STAFF, "appt-1", CompletionDetails())

        assert refused.error.code == "invalid_transition"
        assert retried.success is True
        assert retried.appointment.status == AppointmentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_change_result(self, store, engine, dispatcher):
        store.seed_appointment(make_appointment())
        store.create_notification = AsyncMock(side_effect=TransientError("down", code="unavailable"))

        result = await engine.approve(STAFF, "appt-1")
        await dispatcher.process_pending()

        assert result.success is True
        assert len(dispatcher.failed) == 1
        event, failure = dispatcher.failed[0]
        assert event.kind == SideEffectKind.NOTIFICATION
        assert event.attempts == dispatcher.max_attempts
        assert failure.category == "side_effect"

    @pytest.mark.asyncio
    async def test_after_booking_notifies_staff_with_condition_report(self, store, engine, dispatcher):
        appointment = make_appointment(symptoms="Sharp pain lower left", clinic_email="front-desk@smile.test")

        await engine.after_booking(PATIENT, appointment)

        kinds = []
        while not dispatcher.queue.empty():
            kinds.append(dispatcher.queue.get_nowait().kind)
            dispatcher.queue.task_done()
        # Two notices, each with a clinic email
        assert kinds.count(SideEffectKind.NOTIFICATION) == 2
        assert kinds.count(SideEffectKind.EMAIL) == 2
        assert "appt-1" in engine.cache

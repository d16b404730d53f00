"""Tests for the in-process store's server-side constraints."""

import asyncio
from datetime import date, time

import pytest

from dentalbook.core.errors import ConflictError, NotFoundError, PolicyError, ValidationError
from dentalbook.core.models import AppointmentStatus, TreatmentPlanLink
from dentalbook.infra.realtime import EventType, clinic_appointments_channel
from tests.factories import (
    BOOKING_DAY,
    OTHER_PATIENT,
    OTHER_STAFF,
    PATIENT,
    STAFF,
    TODAY,
    make_appointment,
)


async def _book(store, actor=PATIENT, at=time(9, 0), services=("cleaning",), **kwargs):
    return await store.submit_booking(
        actor,
        clinic_id=kwargs.pop("clinic_id", "clinic-1"),
        doctor_id=kwargs.pop("doctor_id", "doc-1"),
        appointment_date=kwargs.pop("appointment_date", BOOKING_DAY),
        appointment_time=at,
        service_ids=list(services),
        **kwargs,
    )


class TestSubmitBooking:
    """Atomic booking."""

    @pytest.mark.asyncio
    async def test_books_pending_appointment(self, store):
        appointment = await _book(store, services=("cleaning", "fluoride"))

        assert appointment.status == AppointmentStatus.PENDING
        assert appointment.duration_minutes == 45
        assert appointment.patient_email == "pat@example.test"
        assert appointment.clinic_email == "front-desk@smile.test"
        assert appointment.cancellation_policy_hours == 24

    @pytest.mark.asyncio
    async def test_concurrent_same_slot_exactly_one_wins(self, store):
        results = await asyncio.gather(
            _book(store, PATIENT),
            _book(store, OTHER_PATIENT),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], ConflictError)
        assert failures[0].code == "slot_taken"

    @pytest.mark.asyncio
    async def test_overlapping_duration_is_taken(self, store):
        await _book(store, at=time(9, 0), services=("whitening",))

        with pytest.raises(ConflictError) as exc_info:
            await _book(store, OTHER_PATIENT, at=time(9, 30))

        assert exc_info.value.code == "slot_taken"

    @pytest.mark.asyncio
    async def test_same_day_same_clinic_conflict(self, store):
        first = await _book(store, at=time(9, 0))

        with pytest.raises(ConflictError) as exc_info:
            await _book(store, at=time(14, 0), doctor_id="doc-2")

        assert exc_info.value.code == "same_day_conflict"
        assert exc_info.value.details["conflicting_appointment_id"] == first.id

    @pytest.mark.asyncio
    async def test_same_day_allowed_after_cancellation(self, store):
        first = await _book(store, at=time(9, 0))
        await store.cancel_appointment(PATIENT, first.id, "changed plans")

        second = await _book(store, at=time(14, 0))

        assert second.status == AppointmentStatus.PENDING

    @pytest.mark.asyncio
    async def test_staff_cannot_book(self, store):
        with pytest.raises(PolicyError):
            await _book(store, STAFF)

    @pytest.mark.asyncio
    async def test_rejects_past_and_today(self, store):
        with pytest.raises(ValidationError) as exc_info:
            await _book(store, appointment_date=TODAY)

        assert exc_info.value.code == "invalid_date"

    @pytest.mark.asyncio
    async def test_rejects_too_many_services(self, store):
        with pytest.raises(ValidationError) as exc_info:
            await _book(store, services=("cleaning", "fluoride", "xray", "whitening"))

        assert exc_info.value.code == "too_many_services"

    @pytest.mark.asyncio
    async def test_rejects_doctor_of_other_clinic(self, store):
        with pytest.raises(ValidationError) as exc_info:
            await _book(store, doctor_id="doc-3")

        assert exc_info.value.code == "invalid_doctor"

    @pytest.mark.asyncio
    async def test_rejects_time_past_working_hours(self, store):
        with pytest.raises(ValidationError) as exc_info:
            await _book(store, at=time(16, 45), services=("cleaning",))

        assert exc_info.value.code == "invalid_time"

    @pytest.mark.asyncio
    async def test_treatment_plan_link(self, store):
        store.add_treatment_plan("plan-1", "patient-1", "clinic-1", "Root canal", total_visits_planned=3)

        appointment = await _book(store, treatment_plan_id="plan-1")

        assert appointment.treatment_link.treatment_plan_id == "plan-1"
        assert appointment.treatment_link.visit_number == 1

    @pytest.mark.asyncio
    async def test_foreign_treatment_plan_rejected(self, store):
        store.add_treatment_plan("plan-9", "patient-2", "clinic-1")

        with pytest.raises(ValidationError) as exc_info:
            await _book(store, treatment_plan_id="plan-9")

        assert exc_info.value.code == "invalid_treatment_plan"


class TestAvailability:
    """Slot resolution."""

    @pytest.mark.asyncio
    async def test_duration_aware_slots(self, store):
        slots = await store.resolve_available_slots(PATIENT, "doc-1", BOOKING_DAY, ["cleaning", "fluoride"])

        assert [s.time for s in slots[:3]] == [time(9, 0), time(9, 45), time(10, 30)]

    @pytest.mark.asyncio
    async def test_booked_slot_unavailable(self, store):
        await _book(store, at=time(9, 0))

        slots = await store.resolve_available_slots(OTHER_PATIENT, "doc-1", BOOKING_DAY, ["cleaning"])

        assert slots[0].available is False
        assert slots[1].available is True

    @pytest.mark.asyncio
    async def test_unknown_doctor(self, store):
        with pytest.raises(NotFoundError):
            await store.resolve_available_slots(PATIENT, "doc-404", BOOKING_DAY, [])


class TestLifecycle:
    """Transitions and their side effects on stored rows."""

    @pytest.mark.asyncio
    async def test_approve_records_notes(self, store):
        appointment = await _book(store)

        outcome = await store.approve_appointment(STAFF, appointment.id, "bring x-rays")

        assert outcome.appointment.status == AppointmentStatus.CONFIRMED
        assert outcome.appointment.notes == "bring x-rays"
        assert outcome.appointment.updated_at > appointment.updated_at

    @pytest.mark.asyncio
    async def test_other_clinic_staff_cannot_see(self, store):
        appointment = await _book(store)

        with pytest.raises(NotFoundError):
            await store.approve_appointment(OTHER_STAFF, appointment.id)

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, store):
        appointment = await _book(store)

        with pytest.raises(ValidationError) as exc_info:
            await store.reject_appointment(STAFF, appointment.id, "   ")

        assert exc_info.value.code == "missing_reason"

    @pytest.mark.asyncio
    async def test_reject_defaults_category(self, store):
        appointment = await _book(store)

        outcome = await store.reject_appointment(
            STAFF, appointment.id, "doctor away", alternative_dates=[date(2030, 3, 12)]
        )

        assert outcome.appointment.status == AppointmentStatus.CANCELLED
        assert outcome.appointment.rejection_category == "staff_decision"
        assert outcome.data["alternative_dates"] == ["2030-03-12"]

    @pytest.mark.asyncio
    async def test_patient_cancel_outside_window(self, store):
        store.seed_appointment(make_appointment(day=TODAY, at=time(10, 0)))

        with pytest.raises(PolicyError) as exc_info:
            await store.cancel_appointment(PATIENT, "appt-1", "sick")

        assert exc_info.value.code == "outside_cancellation_window"
        assert store.appointments["appt-1"].status == AppointmentStatus.PENDING

    @pytest.mark.asyncio
    async def test_staff_cancel_ignores_window(self, store):
        store.seed_appointment(make_appointment(day=TODAY, at=time(10, 0)))

        outcome = await store.cancel_appointment(STAFF, "appt-1", "clinic closed")

        assert outcome.appointment.status == AppointmentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_complete_increments_plan(self, store):
        store.add_treatment_plan("plan-1", "patient-1", "clinic-1", total_visits_planned=3, visits_completed=1)
        store.seed_appointment(make_appointment(
            status=AppointmentStatus.CONFIRMED,
            treatment_link=TreatmentPlanLink(treatment_plan_id="plan-1", visit_number=2),
        ))

        outcome = await store.complete_appointment(STAFF, "appt-1")

        assert outcome.treatment_progress.visits_completed == 2
        assert store.plans["plan-1"].visits_completed == 2

    @pytest.mark.asyncio
    async def test_cancel_deactivates_plan_link(self, store):
        store.add_treatment_plan("plan-1", "patient-1", "clinic-1", total_visits_planned=3, visits_completed=1)
        store.seed_appointment(make_appointment(
            treatment_link=TreatmentPlanLink(treatment_plan_id="plan-1", visit_number=2),
        ))

        outcome = await store.cancel_appointment(STAFF, "appt-1", "patient request")

        assert outcome.treatment_progress.visits_completed == 1
        assert store.plan_links["plan-1"][0].is_active is False

    @pytest.mark.asyncio
    async def test_publishes_mutations(self, store, feed):
        subscription = await feed.subscribe([clinic_appointments_channel("clinic-1")])

        appointment = await _book(store)
        event = await subscription.get(timeout=1.0)
        await subscription.close()

        assert event.type == EventType.INSERT
        assert event.record_id == appointment.id


class TestReads:
    """Scoped reads and paging."""

    @pytest.mark.asyncio
    async def test_patient_sees_only_own(self, store):
        store.seed_appointment(make_appointment("a"))
        store.seed_appointment(make_appointment("b", patient_id="patient-2", at=time(11, 0)))

        page = await store.list_appointments(PATIENT)

        assert [a.id for a in page.appointments] == ["a"]
        assert await store.get_appointment(PATIENT, "b") is None

    @pytest.mark.asyncio
    async def test_paging(self, store):
        for hour in range(9, 14):
            store.seed_appointment(make_appointment(f"appt-{hour}", at=time(hour, 0)))

        first = await store.list_appointments(STAFF, limit=2)
        last = await store.list_appointments(STAFF, limit=2, offset=4)

        assert first.total_count == 5
        assert first.has_more is True
        assert [a.id for a in first.appointments] == ["appt-9", "appt-10"]
        assert last.has_more is False

    @pytest.mark.asyncio
    async def test_status_filter(self, store):
        store.seed_appointment(make_appointment("a"))
        store.seed_appointment(make_appointment("b", status=AppointmentStatus.CONFIRMED, at=time(11, 0)))

        page = await store.list_appointments(STAFF, status=[AppointmentStatus.CONFIRMED])

        assert [a.id for a in page.appointments] == ["b"]

    @pytest.mark.asyncio
    async def test_ongoing_treatments_skip_finished(self, store):
        store.add_treatment_plan("plan-1", "patient-1", "clinic-1", total_visits_planned=3, visits_completed=1)
        store.add_treatment_plan("plan-2", "patient-1", "clinic-1", total_visits_planned=2, visits_completed=2)

        ongoing = await store.get_ongoing_treatments(PATIENT, "patient-1", "clinic-1")

        assert [p.treatment_plan_id for p in ongoing] == ["plan-1"]

"""Tests for the cancellation policy."""

from datetime import datetime, time, timedelta
from unittest.mock import patch

from dentalbook.core.lifecycle.policy import (
    can_cancel,
    cancellation_deadline,
    explain_cancellation,
    resolve_policy_hours,
)
from dentalbook.core.models import AppointmentStatus
from tests.factories import make_appointment


START = datetime(2030, 3, 11, 10, 0)


class TestCanCancel:
    """Test the eligibility boundary."""

    def test_well_before_window(self):
        appointment = make_appointment(at=time(10, 0))

        assert can_cancel(appointment, 24, START - timedelta(hours=48))

    def test_exactly_at_window_is_not_allowed(self):
        """now == start - N hours is outside the window."""
        appointment = make_appointment(at=time(10, 0))

        assert not can_cancel(appointment, 24, START - timedelta(hours=24))

    def test_one_second_before_window(self):
        appointment = make_appointment(at=time(10, 0))

        assert can_cancel(appointment, 24, START - timedelta(hours=24, seconds=1))

    def test_inside_window(self):
        appointment = make_appointment(at=time(10, 0))

        assert not can_cancel(appointment, 24, START - timedelta(hours=2))

    def test_missing_policy_uses_default(self):
        appointment = make_appointment(at=time(10, 0))

        with patch("dentalbook.core.lifecycle.policy.settings") as mock_settings:
            mock_settings.default_cancellation_policy_hours = 48
            assert not can_cancel(appointment, None, START - timedelta(hours=30))
            assert can_cancel(appointment, None, START - timedelta(hours=49))

    def test_zero_hour_policy(self):
        appointment = make_appointment(at=time(10, 0))

        assert can_cancel(appointment, 0, START - timedelta(minutes=1))
        assert not can_cancel(appointment, 0, START)

    def test_inactive_appointment_cannot_be_cancelled(self):
        for status in (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW):
            appointment = make_appointment(status=status)
            assert not can_cancel(appointment, 24, START - timedelta(days=3))


class TestPolicyHelpers:
    """Test policy resolution and explanations."""

    def test_resolve_policy_hours(self):
        assert resolve_policy_hours(12) == 12
        assert resolve_policy_hours(None) == 24
        assert resolve_policy_hours(-5) == 24

    def test_deadline(self):
        appointment = make_appointment(at=time(10, 0))

        assert cancellation_deadline(appointment, 24) == datetime(2030, 3, 10, 10, 0)

    def test_explain_allowed(self):
        appointment = make_appointment(at=time(10, 0))

        decision = explain_cancellation(appointment, 24, START - timedelta(hours=72))

        assert decision.allowed is True
        assert decision.hours_until == 72.0
        assert decision.to_dict()["can_cancel"] is True

    def test_explain_too_late(self):
        appointment = make_appointment(at=time(10, 0))

        decision = explain_cancellation(appointment, 24, START - timedelta(hours=2))

        assert decision.allowed is False
        assert "24 hours" in decision.reason
        assert decision.policy_hours == 24

    def test_explain_finished_appointment(self):
        appointment = make_appointment(status=AppointmentStatus.COMPLETED)

        decision = explain_cancellation(appointment, 24, START - timedelta(hours=72))

        assert decision.allowed is False
        assert "completed" in decision.reason

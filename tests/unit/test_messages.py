"""Tests for lifecycle notification and email content."""

from dentalbook.core.lifecycle import messages
from dentalbook.core.models import NotificationType
from tests.factories import make_appointment


class TestNotices:
    """Notification content per event."""

    def test_condition_report_goes_to_clinic(self):
        notice = messages.condition_report_for_staff(make_appointment(symptoms="Sharp pain upper left"))

        assert notice.notification_type == NotificationType.CONDITION_REPORT
        assert notice.clinic_id == "clinic-1"
        assert notice.user_id is None
        assert notice.message == "Reported symptoms: Sharp pain upper left"

    def test_confirmation_includes_staff_notes(self):
        notice = messages.confirmed_for_patient(make_appointment(), "Bring your x-rays")

        assert notice.user_id == "patient-1"
        assert notice.message.endswith(" Note from the clinic: Bring your x-rays")

    def test_rejection_defaults_category(self):
        notice = messages.rejected_for_patient(make_appointment(), "Doctor away")

        assert notice.metadata["category"] == "staff_decision"
        assert "Reason: Doctor away" in notice.message

    def test_patient_cancellation_notifies_clinic(self):
        notice = messages.cancelled_notice(make_appointment(), "Feeling better", cancelled_by_patient=True)

        assert notice.clinic_id == "clinic-1"
        assert notice.metadata["cancelled_by"] == "patient"


class TestEmailBody:
    """HTML email rendering."""

    def test_plain_text(self):
        notice = messages.confirmed_for_patient(make_appointment())

        body = messages.email_body(notice)

        assert body.startswith("<h2>Appointment Confirmed</h2><p>Your appointment on ")

    def test_symptoms_are_escaped(self):
        appointment = make_appointment(symptoms="<img src=x onerror=alert(1)>")
        notice = messages.condition_report_for_staff(appointment)

        body = messages.email_body(notice)

        assert "<img" not in body
        assert body == (
            "<h2>Patient Condition Report</h2>"
            "<p>Reported symptoms: &lt;img src=x onerror=alert(1)&gt;</p>"
        )

    def test_reason_quotes_are_escaped(self):
        notice = messages.cancelled_notice(make_appointment(), 'Said "no" & left', cancelled_by_patient=True)

        body = messages.email_body(notice)

        assert "Reason: Said &quot;no&quot; &amp; left" in body

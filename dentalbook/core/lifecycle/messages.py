"""Notification and email content for lifecycle events."""

import html
from typing import Optional

from dentalbook.core.lifecycle.treatment import impact_summary
from dentalbook.core.models import (
    Appointment,
    Notification,
    NotificationType,
    TreatmentPlanProgress,
)


def describe_when(appointment: Appointment) -> str:
    """'Monday, March 10, 2025 at 09:45'."""
    day = appointment.appointment_date.strftime("%A, %B %d, %Y")
    return f"{day} at {appointment.appointment_time.strftime('%H:%M')}"


def _base_metadata(appointment: Appointment) -> dict:
    return {
        "appointment_date": appointment.appointment_date.isoformat(),
        "appointment_time": appointment.appointment_time.strftime("%H:%M"),
        "doctor_id": appointment.doctor_id,
        "clinic_id": appointment.clinic_id,
    }


def booked_for_staff(appointment: Appointment) -> Notification:
    return Notification(
        notification_type=NotificationType.APPOINTMENT_BOOKED,
        clinic_id=appointment.clinic_id,
        appointment_id=appointment.id,
        title="New Appointment Request",
        message=f"A new appointment was requested for {describe_when(appointment)}.",
        metadata={**_base_metadata(appointment), "patient_id": appointment.patient_id},
    )


def condition_report_for_staff(appointment: Appointment) -> Notification:
    return Notification(
        notification_type=NotificationType.CONDITION_REPORT,
        clinic_id=appointment.clinic_id,
        appointment_id=appointment.id,
        title="Patient Condition Report",
        message=f"Reported symptoms: {appointment.symptoms}",
        metadata={**_base_metadata(appointment), "symptoms": appointment.symptoms},
    )


def confirmed_for_patient(appointment: Appointment, staff_notes: Optional[str] = None) -> Notification:
    message = f"Your appointment on {describe_when(appointment)} has been confirmed."
    if staff_notes:
        message += f" Note from the clinic: {staff_notes}"
    return Notification(
        notification_type=NotificationType.APPOINTMENT_CONFIRMED,
        user_id=appointment.patient_id,
        appointment_id=appointment.id,
        title="Appointment Confirmed",
        message=message,
        metadata=_base_metadata(appointment),
    )


def rejected_for_patient(
    appointment: Appointment,
    reason: str,
    category: Optional[str] = None,
    suggest_reschedule: bool = False,
    alternative_dates: Optional[list[str]] = None,
) -> Notification:
    message = (
        f"Your appointment request for {describe_when(appointment)} could not be "
        f"accepted. Reason: {reason}"
    )
    if suggest_reschedule:
        message += " The clinic suggests booking another time."
    return Notification(
        notification_type=NotificationType.APPOINTMENT_REJECTED,
        user_id=appointment.patient_id,
        appointment_id=appointment.id,
        title="Appointment Not Accepted",
        message=message,
        metadata={
            **_base_metadata(appointment),
            "reason": reason,
            "category": category or "staff_decision",
            "suggest_reschedule": suggest_reschedule,
            "alternative_dates": alternative_dates or [],
        },
    )


def cancelled_notice(
    appointment: Appointment,
    reason: str,
    cancelled_by_patient: bool,
) -> Notification:
    """Cancellation notice for the counter-party."""
    if cancelled_by_patient:
        return Notification(
            notification_type=NotificationType.APPOINTMENT_CANCELLED,
            clinic_id=appointment.clinic_id,
            appointment_id=appointment.id,
            title="Appointment Cancelled by Patient",
            message=f"The appointment on {describe_when(appointment)} was cancelled. Reason: {reason}",
            metadata={**_base_metadata(appointment), "reason": reason, "cancelled_by": "patient"},
        )
    return Notification(
        notification_type=NotificationType.APPOINTMENT_CANCELLED,
        user_id=appointment.patient_id,
        appointment_id=appointment.id,
        title="Appointment Cancelled",
        message=f"Your appointment on {describe_when(appointment)} was cancelled by the clinic. Reason: {reason}",
        metadata={**_base_metadata(appointment), "reason": reason, "cancelled_by": "staff"},
    )


def completed_for_patient(
    appointment: Appointment,
    follow_up_required: bool = False,
    follow_up_notes: Optional[str] = None,
) -> Notification:
    message = f"Your appointment on {describe_when(appointment)} has been completed."
    if follow_up_required:
        message += " A follow-up visit is recommended."
        if follow_up_notes:
            message += f" {follow_up_notes}"
    return Notification(
        notification_type=NotificationType.APPOINTMENT_COMPLETED,
        user_id=appointment.patient_id,
        appointment_id=appointment.id,
        title="Appointment Completed",
        message=message,
        metadata={**_base_metadata(appointment), "follow_up_required": follow_up_required},
    )


def no_show_for_patient(appointment: Appointment) -> Notification:
    return Notification(
        notification_type=NotificationType.APPOINTMENT_NO_SHOW,
        user_id=appointment.patient_id,
        appointment_id=appointment.id,
        title="Missed Appointment",
        message=f"You were marked as absent for your appointment on {describe_when(appointment)}.",
        metadata=_base_metadata(appointment),
    )


def treatment_impact(
    appointment: Appointment,
    progress: Optional[TreatmentPlanProgress],
    for_patient: bool,
) -> Notification:
    """Treatment-plan impact notice, separate from the cancellation notice."""
    link = appointment.treatment_link
    visit = f"visit {link.visit_number}" if link else "a visit"
    name = progress.treatment_name if progress and progress.treatment_name else "your treatment plan"
    summary = impact_summary(progress)

    message = f"Cancelling the appointment on {describe_when(appointment)} affects {visit} of {name}."
    if summary:
        message += f" Progress: {summary}."
    if progress and progress.needs_review:
        message += " The plan has been flagged for staff review."

    metadata = {**_base_metadata(appointment)}
    if link:
        metadata["visit_number"] = link.visit_number
        metadata["treatment_plan_id"] = link.treatment_plan_id
    if progress:
        metadata.update({
            "treatment_name": progress.treatment_name,
            "visits_completed": progress.visits_completed,
            "total_visits_planned": progress.total_visits_planned,
            "progress_percent": progress.progress_percent,
            "needs_review": progress.needs_review,
        })

    return Notification(
        notification_type=NotificationType.TREATMENT_PLAN_IMPACT,
        user_id=appointment.patient_id if for_patient else None,
        clinic_id=None if for_patient else appointment.clinic_id,
        appointment_id=appointment.id,
        title="Treatment Plan Affected",
        message=message,
        metadata=metadata,
    )


def email_body(notification: Notification) -> str:
    """Minimal HTML body mirroring a notification.

    Title and message carry patient-entered text (symptoms, reasons) and
    are escaped.
    """
    title = html.escape(notification.title, quote=True)
    message = html.escape(notification.message, quote=True)
    return f"<h2>{title}</h2><p>{message}</p>"

"""
HTTP client for the transactional store.

The store runs separately and exposes server procedures as
POST /rpc/{procedure}. Each returns either
{"success": true, "data": {...}, "message": "..."} or
{"success": false, "error": "...", "code": "..."}.
"""

import logging
from datetime import date, time
from typing import Any, Optional

import httpx

from dentalbook.config import get_settings
from dentalbook.core.errors import (
    BookingError,
    ConflictError,
    NotFoundError,
    PolicyError,
    TransientError,
    ValidationError,
    error_from_code,
)
from dentalbook.core.models import (
    Actor,
    Appointment,
    AppointmentStatus,
    AvailabilitySlot,
    Notification,
    TreatmentPlanProgress,
    format_time,
)
from dentalbook.infra.store import (
    AppointmentPage,
    AppointmentStore,
    CompletionDetails,
    TransitionOutcome,
)

logger = logging.getLogger(__name__)


# HTTP status -> taxonomy, for responses without a store error code
_STATUS_ERRORS: dict[int, type[BookingError]] = {
    400: ValidationError,
    403: PolicyError,
    404: NotFoundError,
    409: ConflictError,
    422: ValidationError,
}


class StoreClient(AppointmentStore):
    """
    HTTP client for the store's server procedures.

    Every call carries the acting identity as headers; the store
    re-validates everything the client checks.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize client.

        Args:
            base_url: Store base URL (defaults to settings)
            api_key: Bearer key (defaults to settings)
            timeout: Request timeout in seconds
        """
        settings = get_settings()
        self.base_url = base_url or settings.store_url
        self.api_key = api_key or settings.store_api_key
        self.timeout = timeout or settings.store_timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _actor_headers(self, actor: Optional[Actor]) -> dict:
        if actor is None:
            return {}
        headers = {"X-Actor-ID": actor.id, "X-Actor-Role": actor.role.value}
        if actor.clinic_id:
            headers["X-Clinic-ID"] = actor.clinic_id
        return headers

    async def _call(
        self,
        procedure: str,
        payload: dict,
        actor: Optional[Actor] = None,
    ) -> Any:
        """Invoke a server procedure.

        Args:
            procedure: Procedure name
            payload: JSON body
            actor: Acting identity

        Returns:
            The "data" member of a successful response

        Raises:
            TransientError: network failure or 5xx
            BookingError: any store-reported failure, mapped by code
        """
        client = await self._get_client()

        try:
            response = await client.post(
                f"/rpc/{procedure}",
                json=payload,
                headers=self._actor_headers(actor),
            )
        except httpx.HTTPError as e:
            logger.error(f"Store call {procedure} failed: {e}")
            raise TransientError(
                "Unable to reach the booking system", code="connection_error"
            ) from e

        if response.status_code >= 500:
            logger.error(f"Store call {procedure} returned {response.status_code}")
            raise TransientError(
                "The booking system is temporarily unavailable", code="unavailable"
            )

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not isinstance(data, dict):
            return data

        if data.get("success") is False:
            raise error_from_code(data.get("code"), data.get("error") or data.get("message"))

        if response.status_code >= 400:
            error_cls = _STATUS_ERRORS.get(response.status_code, BookingError)
            raise error_cls(
                data.get("error") or data.get("message") or f"Request failed ({procedure})",
                code=data.get("code"),
            )

        return data.get("data", data)

    def _outcome(self, data: Any) -> TransitionOutcome:
        """Build a TransitionOutcome from a lifecycle procedure response."""
        data = data or {}
        appointment = data.get("appointment", data)
        progress = data.get("treatment_progress")
        return TransitionOutcome(
            appointment=Appointment.from_dict(appointment),
            message=data.get("message", ""),
            treatment_progress=TreatmentPlanProgress.from_dict(progress) if progress else None,
            data=data,
        )

    # === Availability ===

    async def resolve_available_slots(
        self,
        actor: Actor,
        doctor_id: str,
        appointment_date: date,
        service_ids: list[str],
    ) -> list[AvailabilitySlot]:
        data = await self._call(
            "get_available_time_slots",
            {
                "doctor_id": doctor_id,
                "appointment_date": appointment_date.isoformat(),
                "service_ids": list(service_ids) or None,
            },
            actor,
        )
        if isinstance(data, list):
            slots = data
        else:
            slots = data.get("slots", data.get("items", []))
        return [AvailabilitySlot.from_dict(s) for s in slots]

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
        payload: dict = {
            "clinic_id": clinic_id,
            "doctor_id": doctor_id,
            "appointment_date": appointment_date.isoformat(),
            "appointment_time": format_time(appointment_time),
            "service_ids": list(service_ids) or None,
        }
        if symptoms:
            payload["symptoms"] = symptoms
        if treatment_plan_id:
            payload["treatment_plan_id"] = treatment_plan_id

        data = await self._call("book_appointment", payload, actor)
        appointment = data.get("appointment", data)
        if "appointment_id" in appointment and "id" not in appointment:
            appointment = {**payload, "patient_id": actor.id, **appointment}
        return Appointment.from_dict(appointment)

    # === Lifecycle ===

    async def approve_appointment(
        self,
        actor: Actor,
        appointment_id: str,
        staff_notes: Optional[str] = None,
    ) -> TransitionOutcome:
        data = await self._call(
            "approve_appointment",
            {"appointment_id": appointment_id, "staff_notes": staff_notes},
            actor,
        )
        return self._outcome(data)

    async def reject_appointment(
        self,
        actor: Actor,
        appointment_id: str,
        reason: str,
        category: Optional[str] = None,
        suggest_reschedule: bool = False,
        alternative_dates: Optional[list[date]] = None,
    ) -> TransitionOutcome:
        data = await self._call(
            "reject_appointment",
            {
                "appointment_id": appointment_id,
                "rejection_reason": reason,
                "rejection_category": category or "staff_decision",
                "suggest_reschedule": suggest_reschedule,
                "alternative_dates": [d.isoformat() for d in alternative_dates]
                if alternative_dates
                else None,
            },
            actor,
        )
        return self._outcome(data)

    async def complete_appointment(
        self,
        actor: Actor,
        appointment_id: str,
        details: Optional[CompletionDetails] = None,
    ) -> TransitionOutcome:
        payload = {"appointment_id": appointment_id}
        payload.update((details or CompletionDetails()).to_dict())
        data = await self._call("complete_appointment", payload, actor)
        return self._outcome(data)

    async def mark_no_show(
        self,
        actor: Actor,
        appointment_id: str,
        notes: Optional[str] = None,
    ) -> TransitionOutcome:
        data = await self._call(
            "mark_appointment_no_show",
            {"appointment_id": appointment_id, "staff_notes": notes},
            actor,
        )
        return self._outcome(data)

    async def cancel_appointment(
        self,
        actor: Actor,
        appointment_id: str,
        reason: str,
    ) -> TransitionOutcome:
        data = await self._call(
            "cancel_appointment",
            {
                "appointment_id": appointment_id,
                "cancellation_reason": reason,
                "cancelled_by": actor.id,
            },
            actor,
        )
        return self._outcome(data)

    async def can_cancel_appointment(self, actor: Actor, appointment_id: str) -> bool:
        data = await self._call(
            "can_cancel_appointment",
            {"appointment_id": appointment_id},
            actor,
        )
        if isinstance(data, dict):
            return bool(data.get("can_cancel", data.get("allowed", False)))
        return bool(data)

    # === Reads ===

    async def get_appointment(
        self,
        actor: Actor,
        appointment_id: str,
    ) -> Optional[Appointment]:
        try:
            data = await self._call(
                "get_appointment",
                {"appointment_id": appointment_id},
                actor,
            )
        except NotFoundError:
            return None
        if not data:
            return None
        return Appointment.from_dict(data.get("appointment", data))

    async def list_appointments(
        self,
        actor: Actor,
        status: Optional[list[AppointmentStatus]] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> AppointmentPage:
        data = await self._call(
            "get_appointments_by_role",
            {
                "status": [s.value for s in status] if status else None,
                "date_from": date_from.isoformat() if date_from else None,
                "date_to": date_to.isoformat() if date_to else None,
                "limit": limit,
                "offset": offset,
            },
            actor,
        )
        appointments = [Appointment.from_dict(a) for a in data.get("appointments", [])]
        pagination = data.get("pagination", data)
        total = pagination.get("total_count", len(appointments))
        has_more = pagination.get("has_more", offset + len(appointments) < total)
        return AppointmentPage(
            appointments=appointments,
            total_count=total,
            has_more=bool(has_more),
        )

    async def get_ongoing_treatments(
        self,
        actor: Actor,
        patient_id: str,
        clinic_id: Optional[str] = None,
    ) -> list[TreatmentPlanProgress]:
        data = await self._call(
            "get_patient_ongoing_treatments_for_booking",
            {"patient_id": patient_id, "clinic_id": clinic_id},
            actor,
        )
        treatments = data.get("treatments", []) if isinstance(data, dict) else data
        return [TreatmentPlanProgress.from_dict(t) for t in treatments]

    # === Side-effect sinks ===

    async def create_notification(self, notification: Notification) -> Notification:
        data = await self._call(
            "create_appointment_notification",
            notification.to_dict(),
        )
        if isinstance(data, dict) and data.get("id"):
            notification.id = data["id"]
        return notification

    async def ping(self) -> bool:
        client = await self._get_client()
        try:
            response = await client.get("/health")
            return response.status_code < 500
        except httpx.HTTPError as e:
            logger.warning(f"Store health check failed: {e}")
            return False


# Singleton
_store: Optional[AppointmentStore] = None


def get_store() -> AppointmentStore:
    """Get singleton store backend.

    Uses the in-memory store only when explicitly enabled in development.
    """
    global _store
    if _store is None:
        settings = get_settings()
        if settings.use_in_memory_store and settings.is_development:
            from dentalbook.infra.memory_store import InMemoryStore

            logger.warning("Using in-memory store - data is not persisted")
            _store = InMemoryStore()
        else:
            _store = StoreClient()
    return _store

"""Tests for the store HTTP client."""

import pytest
from datetime import date, time
from unittest.mock import AsyncMock, MagicMock

import httpx

from dentalbook.core.errors import (
    ConflictError,
    NotFoundError,
    PolicyError,
    TransientError,
    ValidationError,
)
from dentalbook.core.models import AppointmentStatus
from dentalbook.infra.store_client import StoreClient
from tests.factories import PATIENT, STAFF, make_appointment


def _response(status_code: int = 200, payload=None) -> MagicMock:
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.json.return_value = payload if payload is not None else {}
    return mock_response


class TestStoreClient:
    """Test StoreClient."""

    @pytest.fixture
    def client(self):
        """Create client with mock HTTP."""
        return StoreClient(base_url="http://store:54321", api_key="test-key")

    @pytest.fixture
    def mock_httpx_client(self, client):
        """Create mock httpx client."""
        mock = AsyncMock()
        client._client = mock
        return mock

    @pytest.mark.asyncio
    async def test_resolve_slots(self, client, mock_httpx_client):
        """Test slot lookup."""
        mock_httpx_client.post = AsyncMock(return_value=_response(200, {
            "success": True,
            "data": {"slots": [
                {"time": "09:00", "available": True},
                {"time": "09:45", "available": False},
            ]},
        }))

        slots = await client.resolve_available_slots(PATIENT, "doc-1", date(2030, 3, 11), ["cleaning"])

        assert [s.time for s in slots] == [time(9, 0), time(9, 45)]
        assert slots[1].available is False

        args, kwargs = mock_httpx_client.post.call_args
        assert args[0] == "/rpc/get_available_time_slots"
        assert kwargs["json"]["appointment_date"] == "2030-03-11"
        assert kwargs["headers"] == {"X-Actor-ID": "patient-1", "X-Actor-Role": "patient"}

    @pytest.mark.asyncio
    async def test_resolve_slots_plain_list(self, client, mock_httpx_client):
        """Test handling a bare list of times."""
        mock_httpx_client.post = AsyncMock(return_value=_response(200, ["10:00", "10:30"]))

        slots = await client.resolve_available_slots(PATIENT, "doc-1", date(2030, 3, 11), [])

        assert len(slots) == 2
        assert all(s.available for s in slots)

    @pytest.mark.asyncio
    async def test_submit_booking(self, client, mock_httpx_client):
        """Test booking submission."""
        row = make_appointment(duration=45).to_dict()
        mock_httpx_client.post = AsyncMock(return_value=_response(200, {
            "success": True,
            "data": {"appointment": row},
        }))

        appointment = await client.submit_booking(
            PATIENT, "clinic-1", "doc-1", date(2030, 3, 11), time(10, 0), ["cleaning", "fluoride"],
            symptoms="sensitivity",
        )

        assert appointment.id == "appt-1"
        assert appointment.duration_minutes == 45
        payload = mock_httpx_client.post.call_args.kwargs["json"]
        assert payload["appointment_time"] == "10:00"
        assert payload["symptoms"] == "sensitivity"
        assert "treatment_plan_id" not in payload

    @pytest.mark.asyncio
    async def test_store_error_code_mapped(self, client, mock_httpx_client):
        """Store-reported codes map onto the taxonomy."""
        mock_httpx_client.post = AsyncMock(return_value=_response(200, {
            "success": False,
            "error": "This time slot was just booked",
            "code": "slot_taken",
        }))

        with pytest.raises(ConflictError) as exc_info:
            await client.submit_booking(
                PATIENT, "clinic-1", "doc-1", date(2030, 3, 11), time(10, 0), []
            )

        assert exc_info.value.code == "slot_taken"
        assert exc_info.value.message == "This time slot was just booked"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code,error_cls", [
        ("outside_cancellation_window", PolicyError),
        ("appointment_not_found", NotFoundError),
        ("invalid_date", ValidationError),
        ("too_many_services", ValidationError),
        ("same_day_conflict", ConflictError),
    ])
    async def test_error_codes(self, client, mock_httpx_client, code, error_cls):
        mock_httpx_client.post = AsyncMock(return_value=_response(400, {"success": False, "code": code}))

        with pytest.raises(error_cls):
            await client.cancel_appointment(PATIENT, "appt-1", "sick")

    @pytest.mark.asyncio
    async def test_status_without_code(self, client, mock_httpx_client):
        """HTTP status is used when the body has no error code."""
        mock_httpx_client.post = AsyncMock(return_value=_response(403, {"error": "nope"}))

        with pytest.raises(PolicyError):
            await client.approve_appointment(STAFF, "appt-1")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, client, mock_httpx_client):
        mock_httpx_client.post = AsyncMock(return_value=_response(503))

        with pytest.raises(TransientError) as exc_info:
            await client.approve_appointment(STAFF, "appt-1")

        assert exc_info.value.code == "unavailable"
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, client, mock_httpx_client):
        mock_httpx_client.post = AsyncMock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(TransientError) as exc_info:
            await client.approve_appointment(STAFF, "appt-1")

        assert exc_info.value.code == "connection_error"

    @pytest.mark.asyncio
    async def test_transition_outcome(self, client, mock_httpx_client):
        """Lifecycle responses carry the row and treatment progress."""
        row = make_appointment(status=AppointmentStatus.CANCELLED).to_dict()
        mock_httpx_client.post = AsyncMock(return_value=_response(200, {
            "success": True,
            "data": {
                "appointment": row,
                "message": "Appointment rejected",
                "treatment_progress": {
                    "treatment_plan_id": "plan-1",
                    "visits_completed": 1,
                    "total_visits_planned": 4,
                },
            },
        }))

        outcome = await client.reject_appointment(
            STAFF, "appt-1", "doctor away", alternative_dates=[date(2030, 3, 12)]
        )

        assert outcome.appointment.status == AppointmentStatus.CANCELLED
        assert outcome.treatment_progress.progress_percent == 25
        payload = mock_httpx_client.post.call_args.kwargs["json"]
        assert payload["rejection_category"] == "staff_decision"
        assert payload["alternative_dates"] == ["2030-03-12"]
        headers = mock_httpx_client.post.call_args.kwargs["headers"]
        assert headers["X-Clinic-ID"] == "clinic-1"

    @pytest.mark.asyncio
    async def test_get_appointment_not_found(self, client, mock_httpx_client):
        mock_httpx_client.post = AsyncMock(return_value=_response(404, {"error": "missing"}))

        assert await client.get_appointment(PATIENT, "appt-9") is None

    @pytest.mark.asyncio
    async def test_list_appointments_pagination(self, client, mock_httpx_client):
        mock_httpx_client.post = AsyncMock(return_value=_response(200, {
            "success": True,
            "data": {
                "appointments": [make_appointment().to_dict()],
                "pagination": {"total_count": 3, "has_more": True},
            },
        }))

        page = await client.list_appointments(STAFF, status=[AppointmentStatus.PENDING], limit=1)

        assert page.total_count == 3
        assert page.has_more is True
        assert mock_httpx_client.post.call_args.kwargs["json"]["status"] == ["pending"]

    @pytest.mark.asyncio
    async def test_can_cancel(self, client, mock_httpx_client):
        mock_httpx_client.post = AsyncMock(return_value=_response(200, {
            "success": True,
            "data": {"can_cancel": False},
        }))

        assert await client.can_cancel_appointment(PATIENT, "appt-1") is False

    @pytest.mark.asyncio
    async def test_ping(self, client, mock_httpx_client):
        mock_httpx_client.get = AsyncMock(return_value=_response(200))
        assert await client.ping() is True

        mock_httpx_client.get = AsyncMock(side_effect=httpx.ConnectError("refused"))
        assert await client.ping() is False

    @pytest.mark.asyncio
    async def test_close(self, client, mock_httpx_client):
        await client.close()

        mock_httpx_client.aclose.assert_called_once()
        assert client._client is None

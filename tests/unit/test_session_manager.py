"""Tests for wizard session management."""

import pytest
from unittest.mock import AsyncMock, patch
from datetime import date, time

from dentalbook.core.models import AvailabilitySlot
from dentalbook.core.scheduling.draft import BookingDraft, WizardSession
from dentalbook.core.scheduling.session import WizardSessionManager
from dentalbook.core.scheduling.state import WizardStep


class TestWizardSessionManager:
    """Test Redis session management."""

    @pytest.fixture
    def mock_redis(self):
        """Create mock Redis client."""
        mock = AsyncMock()
        mock.get = AsyncMock(return_value=None)
        mock.setex = AsyncMock()
        mock.delete = AsyncMock(return_value=1)
        return mock

    @pytest.fixture
    def manager(self):
        """Create session manager."""
        return WizardSessionManager()

    @pytest.mark.asyncio
    async def test_create_session(self, manager, mock_redis):
        """Test session creation."""
        with patch(
            "dentalbook.core.scheduling.session.get_redis",
            return_value=mock_redis,
        ):
            session = await manager.create("patient-1")

            assert session.session_id is not None
            assert session.actor_id == "patient-1"
            assert session.step == WizardStep.CLINIC
            mock_redis.setex.assert_called_once()
            key = mock_redis.setex.call_args.args[0]
            assert key == f"dentalbook:v1:wizard:patient-1:{session.session_id}"

    @pytest.mark.asyncio
    async def test_create_session_fallback(self, manager):
        """Test session creation with Redis unavailable."""
        with patch(
            "dentalbook.core.scheduling.session.get_redis",
            return_value=None,
        ):
            session = await manager.create("patient-1")

            key = manager._key("patient-1", session.session_id)
            assert key in manager._in_memory_fallback

    @pytest.mark.asyncio
    async def test_get_existing(self, manager, mock_redis):
        """Test getting existing session."""
        existing = WizardSession(
            session_id="sess-123",
            actor_id="patient-1",
            step=WizardStep.DATETIME,
            draft=BookingDraft(
                clinic_id="clinic-1",
                service_ids=["cleaning"],
                doctor_id="doc-1",
                appointment_date=date(2030, 3, 11),
            ),
            available_slots=[AvailabilitySlot(time=time(9, 0))],
            slots_stale=False,
        )
        mock_redis.get = AsyncMock(return_value=existing.to_json())

        with patch(
            "dentalbook.core.scheduling.session.get_redis",
            return_value=mock_redis,
        ):
            session = await manager.get("patient-1", "sess-123")

            assert session is not None
            assert session.step == WizardStep.DATETIME
            assert session.draft.appointment_date == date(2030, 3, 11)
            assert session.available_slots[0].time == time(9, 0)
            assert session.slots_stale is False

    @pytest.mark.asyncio
    async def test_get_nonexistent(self, manager, mock_redis):
        """Test getting non-existent session."""
        with patch(
            "dentalbook.core.scheduling.session.get_redis",
            return_value=mock_redis,
        ):
            session = await manager.get("patient-1", "nonexistent")

            assert session is None

    @pytest.mark.asyncio
    async def test_other_actor_cannot_load_session(self, manager):
        """Sessions are keyed by owner."""
        with patch(
            "dentalbook.core.scheduling.session.get_redis",
            return_value=None,
        ):
            session = await manager.create("patient-1")

            assert await manager.get("patient-2", session.session_id) is None
            assert await manager.get("patient-1", session.session_id) is not None

    @pytest.mark.asyncio
    async def test_save_refreshes_ttl(self, manager, mock_redis):
        """Test saving session."""
        session = WizardSession(actor_id="patient-1")

        with patch(
            "dentalbook.core.scheduling.session.get_redis",
            return_value=mock_redis,
        ):
            result = await manager.save(session)

            assert result is True
            ttl = mock_redis.setex.call_args.args[1]
            assert ttl == manager._ttl

    @pytest.mark.asyncio
    async def test_fallback_returns_copy(self, manager):
        """Mutating a loaded session does not change the stored one until saved."""
        with patch(
            "dentalbook.core.scheduling.session.get_redis",
            return_value=None,
        ):
            session = await manager.create("patient-1")
            loaded = await manager.get("patient-1", session.session_id)
            loaded.step = WizardStep.SERVICES

            reloaded = await manager.get("patient-1", session.session_id)
            assert reloaded.step == WizardStep.CLINIC

            await manager.save(loaded)
            reloaded = await manager.get("patient-1", session.session_id)
            assert reloaded.step == WizardStep.SERVICES

    @pytest.mark.asyncio
    async def test_fallback_expiry(self, manager):
        """Expired local sessions are dropped."""
        manager._ttl = 0
        with patch(
            "dentalbook.core.scheduling.session.get_redis",
            return_value=None,
        ):
            session = await manager.create("patient-1")

            assert await manager.get("patient-1", session.session_id) is None

    @pytest.mark.asyncio
    async def test_delete_session(self, manager, mock_redis):
        """Test session deletion."""
        with patch(
            "dentalbook.core.scheduling.session.get_redis",
            return_value=mock_redis,
        ):
            result = await manager.delete("patient-1", "sess-123")

            assert result is True
            mock_redis.delete.assert_called_once()

"""
Availability Resolver.

Returns bookable slots for a doctor/date/service set. Every call goes to
the store for current state; nothing is served from a local notion of
"already booked". Identical concurrent requests share one round trip.
"""

import logging
from datetime import date
from typing import Callable, Optional

from dentalbook.config import settings
from dentalbook.core.errors import TransientError, ValidationError
from dentalbook.core.models import Actor, AvailabilitySlot
from dentalbook.core.scheduling.throttle import Debouncer
from dentalbook.infra.store import AppointmentStore

logger = logging.getLogger(__name__)


class AvailabilityResolver:
    """Resolves available slots through the store."""

    def __init__(
        self,
        store: AppointmentStore,
        debouncer: Optional[Debouncer] = None,
        today: Callable[[], date] = date.today,
        max_services: Optional[int] = None,
    ):
        self.store = store
        self.debouncer = debouncer or Debouncer()
        self._today = today
        self.max_services = max_services or settings.max_services_per_booking

    async def resolve(
        self,
        actor: Actor,
        doctor_id: Optional[str],
        appointment_date: Optional[date],
        service_ids: list[str],
        force: bool = False,
    ) -> list[AvailabilitySlot]:
        """
        Resolve slots.

        Args:
            actor: Acting identity
            doctor_id: Selected doctor (None -> no slots)
            appointment_date: Selected day (None -> no slots)
            service_ids: Selected services (0..3)
            force: Skip the minimum-interval wait

        Returns:
            Ordered slots; empty when doctor or date is missing

        Raises:
            ValidationError: date not in the future, or too many services
            TransientError: store unreachable (distinct from "no slots")
        """
        if not doctor_id or appointment_date is None:
            return []

        if appointment_date <= self._today():
            raise ValidationError(
                "Please select a future date",
                code="invalid_date",
            )

        if len(service_ids) > self.max_services:
            raise ValidationError(
                f"You can select up to {self.max_services} services",
                code="too_many_services",
            )

        key = (doctor_id, appointment_date.isoformat(), tuple(sorted(service_ids)))

        async def fetch() -> list[AvailabilitySlot]:
            return await self.store.resolve_available_slots(
                actor, doctor_id, appointment_date, list(service_ids)
            )

        try:
            slots = await self.debouncer.run(key, fetch, force=force)
        except TransientError:
            logger.warning(f"Slot lookup failed for doctor {doctor_id} on {appointment_date}")
            raise

        logger.debug(
            f"Resolved {sum(1 for s in slots if s.available)}/{len(slots)} "
            f"available slots for doctor {doctor_id} on {appointment_date}"
        )
        return slots

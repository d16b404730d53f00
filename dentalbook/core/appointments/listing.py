"""
Paginated appointment list.

refresh() replaces the held rows with a fresh first page, load_more()
appends the next page. Rows live in an AppointmentCache so that realtime
merges and optimistic transitions act on the same copies.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Optional

from dentalbook.core.appointments.cache import AppointmentCache
from dentalbook.core.models import Actor, Appointment, AppointmentStatus
from dentalbook.infra.store import AppointmentStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20


@dataclass
class AppointmentFilters:
    """
    Filters for the held list.

    status and the date range are forwarded to listAppointments; search
    narrows the loaded rows by a case-insensitive substring of patient
    name, patient email, service or symptoms.
    """

    status: list[AppointmentStatus] = field(default_factory=list)
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    search: Optional[str] = None

    def matches(self, appointment: Appointment) -> bool:
        """Check a row against the search term. Blank terms match everything."""
        term = (self.search or "").strip().lower()
        if not term:
            return True
        fields = [
            appointment.patient_name,
            appointment.patient_email,
            appointment.symptoms,
            *appointment.service_ids,
        ]
        return any(term in value.lower() for value in fields if value)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "status": [s.value for s in self.status],
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
            "search": self.search,
        }


class AppointmentList:
    """
    Appointments in an actor's scope, one page at a time.

    Example:
        listing = AppointmentList(store, actor)
        await listing.refresh(AppointmentFilters(status=[AppointmentStatus.PENDING]))
        while listing.has_more:
            await listing.load_more()
    """

    def __init__(
        self,
        store: AppointmentStore,
        actor: Actor,
        cache: Optional[AppointmentCache] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        today: Callable[[], date] = date.today,
    ):
        self.store = store
        self.actor = actor
        self.cache = cache or AppointmentCache()
        self.page_size = page_size
        self.filters = AppointmentFilters()
        self._today = today
        self._offset = 0
        self.total_count = 0
        self.has_more = False

    async def refresh(self, filters: Optional[AppointmentFilters] = None) -> list[Appointment]:
        """Load the first page, replacing what is held."""
        if filters is not None:
            self.filters = filters
        page = await self._fetch(offset=0)
        self.cache.replace_all(page.appointments)
        self._offset = len(page.appointments)
        logger.debug(
            f"Loaded {len(page.appointments)}/{page.total_count} appointments for "
            f"{self.actor.role.value} {self.actor.id}"
        )
        return self.items

    async def load_more(self) -> list[Appointment]:
        """Append the next page. No-op when everything is loaded."""
        if not self.has_more:
            return self.items
        page = await self._fetch(offset=self._offset)
        self.cache.extend(page.appointments)
        self._offset += len(page.appointments)
        return self.items

    async def _fetch(self, offset: int):
        page = await self.store.list_appointments(
            self.actor,
            status=self.filters.status or None,
            date_from=self.filters.date_from,
            date_to=self.filters.date_to,
            limit=self.page_size,
            offset=offset,
        )
        self.total_count = page.total_count
        self.has_more = page.has_more
        return page

    def search(self, term: Optional[str]) -> list[Appointment]:
        """Change the search term. Applies to held rows without refetching."""
        self.filters.search = term
        return self.items

    @property
    def items(self) -> list[Appointment]:
        """Held rows matching the search term, ordered by start time."""
        rows = sorted(self.cache.all(), key=lambda a: a.starts_at)
        return [a for a in rows if self.filters.matches(a)]

    # === Views ===

    def stats(self) -> dict[str, int]:
        """Count of held rows per status, ignoring the search term."""
        counts = Counter(a.status.value for a in self.cache.all())
        return {status.value: counts.get(status.value, 0) for status in AppointmentStatus}

    def pending(self) -> list[Appointment]:
        """Requests awaiting a staff decision."""
        return [a for a in self.items if a.status == AppointmentStatus.PENDING]

    def today(self) -> list[Appointment]:
        """Confirmed visits on the current day."""
        day = self._today()
        return [
            a for a in self.items
            if a.appointment_date == day and a.status == AppointmentStatus.CONFIRMED
        ]

    def upcoming(self) -> list[Appointment]:
        """Active appointments from today on."""
        day = self._today()
        return [a for a in self.items if a.is_active and a.appointment_date >= day]

    def past(self) -> list[Appointment]:
        """Finished appointments, most recent first."""
        finished = [a for a in self.items if not a.is_active]
        return list(reversed(finished))

    def views(self) -> dict[str, list[Appointment]]:
        """Role-specific groupings."""
        if self.actor.is_staff:
            return {"pending": self.pending(), "today": self.today()}
        return {"upcoming": self.upcoming(), "past": self.past()}

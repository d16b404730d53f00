"""
Local appointment cache.

Keyed by appointment id. The store is the source of truth:

- apply_optimistic() records a provisional change plus the snapshot it
  replaced; rollback() restores the snapshot, reconcile() replaces it with
  the server's row.
- merge_event() applies realtime mutations idempotently: an incoming row
  only replaces the held one if it carries an updated_at strictly newer
  than the held stamp, and deletes leave a tombstone so a late duplicate
  insert cannot resurrect the row.
- With max_entries set, the oldest rows (and tombstones) are evicted first;
  rows with a pending provisional change are never evicted.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Optional
from uuid import uuid4

from dentalbook.core.models import Appointment, parse_timestamp
from dentalbook.infra.realtime import APPOINTMENTS_TABLE, EventType, RealtimeEvent

logger = logging.getLogger(__name__)


def is_newer(incoming: Optional[datetime], held: Optional[datetime]) -> bool:
    """True if incoming is a stamp strictly after held (an unstamped held row is older)."""
    if incoming is None:
        return False
    return held is None or incoming > held


class AppointmentCache:
    """Id-keyed appointment cache with provisional updates."""

    def __init__(self, max_entries: Optional[int] = None):
        self.max_entries = max_entries
        self._entries: dict[str, Appointment] = {}
        # token -> (appointment id, snapshot before the provisional change)
        self._provisional: dict[str, tuple[str, Optional[Appointment]]] = {}
        self._tombstones: dict[str, Optional[datetime]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, appointment_id: str) -> bool:
        return appointment_id in self._entries

    def get(self, appointment_id: str) -> Optional[Appointment]:
        return self._entries.get(appointment_id)

    def all(self) -> list[Appointment]:
        """Entries in insertion order."""
        return list(self._entries.values())

    def is_provisional(self, appointment_id: str) -> bool:
        return any(aid == appointment_id for aid, _ in self._provisional.values())

    # === Server truth ===

    def reconcile(self, appointment: Appointment) -> Appointment:
        """Store the server's copy of a row, clearing any provisional state."""
        self._clear_provisional(appointment.id)
        self._tombstones.pop(appointment.id, None)
        self._entries[appointment.id] = appointment
        self._evict()
        return appointment

    def replace_all(self, appointments: list[Appointment]) -> None:
        """Replace contents with a fresh first page."""
        self._entries = {a.id: a for a in appointments}
        self._provisional.clear()

    def extend(self, appointments: list[Appointment]) -> None:
        """Append a further page, keeping newer held copies."""
        for appointment in appointments:
            held = self._entries.get(appointment.id)
            if held is None or not is_newer(held.updated_at, appointment.updated_at):
                self._entries[appointment.id] = appointment
        self._evict()

    def remove(self, appointment_id: str) -> Optional[Appointment]:
        self._clear_provisional(appointment_id)
        return self._entries.pop(appointment_id, None)

    # === Optimistic updates ===

    def apply_optimistic(self, appointment_id: str, **changes) -> str:
        """Apply a provisional change.

        updated_at is left untouched so that the server's echo of the same
        change always supersedes the provisional copy.

        Returns:
            Token for rollback()
        """
        token = str(uuid4())
        held = self._entries.get(appointment_id)
        self._provisional[token] = (appointment_id, held)
        if held is not None:
            self._entries[appointment_id] = replace(held, **changes)
        logger.debug(f"Provisional update {token} on {appointment_id}: {changes}")
        return token

    def rollback(self, token: str) -> Optional[Appointment]:
        """Undo a provisional change, if it has not been reconciled yet."""
        entry = self._provisional.pop(token, None)
        if entry is None:
            return None
        appointment_id, snapshot = entry
        if snapshot is None:
            self._entries.pop(appointment_id, None)
        else:
            self._entries[appointment_id] = snapshot
        logger.debug(f"Rolled back provisional update {token} on {appointment_id}")
        return snapshot

    def _clear_provisional(self, appointment_id: str) -> None:
        for token in [t for t, (aid, _) in self._provisional.items() if aid == appointment_id]:
            del self._provisional[token]

    def _evict(self) -> None:
        if self.max_entries is None:
            return
        while len(self._tombstones) > self.max_entries:
            del self._tombstones[next(iter(self._tombstones))]
        if len(self._entries) <= self.max_entries:
            return
        pinned = {aid for aid, _ in self._provisional.values()}
        for appointment_id in list(self._entries):
            if len(self._entries) <= self.max_entries:
                break
            if appointment_id not in pinned:
                del self._entries[appointment_id]

    # === Realtime ===

    def merge_event(self, event: RealtimeEvent) -> bool:
        """Merge an appointment mutation.

        Returns:
            True if the cache changed
        """
        if event.table != APPOINTMENTS_TABLE:
            return False

        appointment_id = event.record_id
        if appointment_id is None:
            return False

        if event.type == EventType.DELETE:
            self._tombstones[appointment_id] = parse_timestamp((event.old or {}).get("updated_at"))
            self._evict()
            return self.remove(appointment_id) is not None

        incoming = Appointment.from_dict(event.new or {})

        if appointment_id in self._tombstones:
            tomb = self._tombstones[appointment_id]
            if tomb is None or not is_newer(incoming.updated_at, tomb):
                return False

        held = self._entries.get(appointment_id)
        if held is not None and not is_newer(incoming.updated_at, held.updated_at):
            return False

        self.reconcile(incoming)
        return True

"""
Realtime synchronization.

One RealtimeSync per mounted view: it subscribes to the actor's appointment
scope plus their notification channels, merges appointment mutations into
an AppointmentCache and forwards status changes and notifications to
optional callbacks. A sync must be stopped when its view goes away;
SubscriptionRegistry ties syncs to a session so none outlives it.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from dentalbook.core.appointments.cache import AppointmentCache
from dentalbook.core.models import Actor, AppointmentStatus, Notification
from dentalbook.infra.realtime import (
    APPOINTMENTS_TABLE,
    NOTIFICATIONS_TABLE,
    EventType,
    RealtimeEvent,
    RealtimeFeed,
    Subscription,
    appointment_scope_channel,
    notification_scope_channels,
)

logger = logging.getLogger(__name__)

StatusChangeCallback = Callable[[str, Optional[AppointmentStatus], Optional[AppointmentStatus]], Any]
NotificationCallback = Callable[[Notification, bool], Any]
EventCallback = Callable[[RealtimeEvent], Any]


async def _call(callback: Optional[Callable], *args) -> None:
    """Invoke a sync or async callback, logging its failures."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"Realtime callback {getattr(callback, '__name__', callback)} failed: {e}")


class RealtimeSync:
    """Keeps a cache in step with the store's mutation feed."""

    def __init__(
        self,
        feed: RealtimeFeed,
        actor: Actor,
        cache: AppointmentCache,
        on_status_change: Optional[StatusChangeCallback] = None,
        on_notification: Optional[NotificationCallback] = None,
        on_event: Optional[EventCallback] = None,
    ):
        self.feed = feed
        self.actor = actor
        self.cache = cache
        self.on_status_change = on_status_change
        self.on_notification = on_notification
        self.on_event = on_event
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def channels(self) -> list[str]:
        return [appointment_scope_channel(self.actor), *notification_scope_channels(self.actor)]

    async def start(self) -> None:
        """Open the subscription and start consuming."""
        if self.active:
            return
        self._subscription = await self.feed.subscribe(self.channels)
        self._task = asyncio.create_task(self._consume(), name=f"realtime-sync-{self.actor.id}")
        logger.info(f"Realtime sync started for {self.actor.role.value} {self.actor.id}")

    async def stop(self) -> None:
        """Close the subscription and wait for the consumer to finish."""
        if self._subscription is not None:
            await self._subscription.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._subscription = None
        self._task = None
        logger.info(f"Realtime sync stopped for {self.actor.role.value} {self.actor.id}")

    async def _consume(self) -> None:
        subscription = self._subscription
        async for event in subscription:
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.error(f"Failed to apply realtime event on {event.table}: {e}")

    def _in_scope(self, record: dict) -> bool:
        return self.actor.in_scope(str(record.get("patient_id", "")), str(record.get("clinic_id", "")))

    async def handle_event(self, event: RealtimeEvent) -> bool:
        """Apply one event.

        Returns:
            True if local state changed
        """
        await _call(self.on_event, event)

        if event.table == NOTIFICATIONS_TABLE:
            if event.type == EventType.DELETE or not event.new:
                return False
            notification = Notification.from_dict(event.new)
            await _call(self.on_notification, notification, event.type == EventType.INSERT)
            return True

        if event.table != APPOINTMENTS_TABLE:
            return False

        if not self._in_scope(event.record):
            logger.debug(f"Ignoring out-of-scope event for {event.record_id}")
            return False

        held = self.cache.get(event.record_id) if event.record_id else None
        old_status = held.status if held else None

        changed = self.cache.merge_event(event)
        if not changed:
            return False

        current = self.cache.get(event.record_id)
        new_status = current.status if current else None
        if old_status is not None and old_status != new_status:
            await _call(self.on_status_change, event.record_id, old_status, new_status)
        return True


class SubscriptionRegistry:
    """Live syncs grouped by the session that owns them."""

    def __init__(self):
        self._sessions: dict[str, list[RealtimeSync]] = {}

    def register(self, session_key: str, sync: RealtimeSync) -> None:
        self._sessions.setdefault(session_key, []).append(sync)

    def count(self, session_key: Optional[str] = None) -> int:
        if session_key is not None:
            return len(self._sessions.get(session_key, []))
        return sum(len(syncs) for syncs in self._sessions.values())

    async def close_session(self, session_key: str) -> int:
        """Stop every sync owned by a session."""
        syncs = self._sessions.pop(session_key, [])
        for sync in syncs:
            await sync.stop()
        if syncs:
            logger.debug(f"Closed {len(syncs)} realtime subscriptions for {session_key}")
        return len(syncs)

    async def close_all(self) -> None:
        for session_key in list(self._sessions):
            await self.close_session(session_key)

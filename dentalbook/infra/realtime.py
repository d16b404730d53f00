"""
Realtime mutation feed.

The store publishes one JSON event per appointment/notification mutation
to Redis pub/sub channels scoped by audience:

- {prefix}:appointments:patient:{patient_id}
- {prefix}:appointments:clinic:{clinic_id}
- {prefix}:appointments:all
- {prefix}:notifications:user:{user_id}
- {prefix}:notifications:clinic:{clinic_id}

Event body: {"table": ..., "type": "INSERT|UPDATE|DELETE", "new": {...}, "old": {...}}

InMemoryRealtimeFeed offers the same interface in-process for the
in-memory store and tests.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from dentalbook.config import settings
from dentalbook.core.models import Actor, ActorRole
from dentalbook.infra.redis import get_redis

logger = logging.getLogger(__name__)

APPOINTMENTS_TABLE = "appointments"
NOTIFICATIONS_TABLE = "notifications"


class EventType(str, Enum):
    """Mutation kind."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class RealtimeEvent:
    """A single row mutation."""

    table: str
    type: EventType
    new: Optional[dict] = None
    old: Optional[dict] = None

    @property
    def record(self) -> dict:
        """The row the event is about (old row for deletes)."""
        if self.type == EventType.DELETE:
            return self.old or {}
        return self.new or {}

    @property
    def record_id(self) -> Optional[str]:
        record_id = self.record.get("id")
        return str(record_id) if record_id is not None else None

    def to_json(self) -> str:
        """Serialize to JSON."""
        return json.dumps({
            "table": self.table,
            "type": self.type.value,
            "new": self.new,
            "old": self.old,
        })

    @classmethod
    def from_json(cls, data: str) -> "RealtimeEvent":
        """Deserialize from JSON."""
        payload = json.loads(data)
        return cls(
            table=payload.get("table", APPOINTMENTS_TABLE),
            type=EventType(payload.get("type", "UPDATE").upper()),
            new=payload.get("new") or None,
            old=payload.get("old") or None,
        )


# === Channel naming ===


def _channel(*parts: str) -> str:
    return ":".join([settings.realtime_channel_prefix, *parts])


def patient_appointments_channel(patient_id: str) -> str:
    return _channel(APPOINTMENTS_TABLE, "patient", patient_id)


def clinic_appointments_channel(clinic_id: str) -> str:
    return _channel(APPOINTMENTS_TABLE, "clinic", clinic_id)


def all_appointments_channel() -> str:
    return _channel(APPOINTMENTS_TABLE, "all")


def user_notifications_channel(user_id: str) -> str:
    return _channel(NOTIFICATIONS_TABLE, "user", user_id)


def clinic_notifications_channel(clinic_id: str) -> str:
    return _channel(NOTIFICATIONS_TABLE, "clinic", clinic_id)


def appointment_scope_channel(actor: Actor) -> str:
    """Appointment channel an actor is allowed to watch.

    Patients see their own appointments, staff their clinic's, admins
    and unscoped staff everything. Matches Actor.in_scope.
    """
    if actor.role == ActorRole.PATIENT:
        return patient_appointments_channel(actor.id)
    if actor.role == ActorRole.STAFF and actor.clinic_id:
        return clinic_appointments_channel(actor.clinic_id)
    return all_appointments_channel()


def notification_scope_channels(actor: Actor) -> list[str]:
    """Notification channels an actor receives."""
    channels = [user_notifications_channel(actor.id)]
    if actor.is_staff and actor.clinic_id:
        channels.append(clinic_notifications_channel(actor.clinic_id))
    return channels


def channels_for_event(event: RealtimeEvent) -> list[str]:
    """Every channel a mutation must be fanned out to."""
    record = event.record
    channels = []
    if event.table == APPOINTMENTS_TABLE:
        if record.get("patient_id"):
            channels.append(patient_appointments_channel(str(record["patient_id"])))
        if record.get("clinic_id"):
            channels.append(clinic_appointments_channel(str(record["clinic_id"])))
        channels.append(all_appointments_channel())
    elif event.table == NOTIFICATIONS_TABLE:
        if record.get("user_id"):
            channels.append(user_notifications_channel(str(record["user_id"])))
        if record.get("clinic_id"):
            channels.append(clinic_notifications_channel(str(record["clinic_id"])))
    return channels


# === Subscriptions ===


class Subscription(ABC):
    """A live subscription to one or more channels. Must be closed."""

    def __init__(self, channels: list[str]):
        self.channels = list(channels)
        self.closed = False

    @abstractmethod
    async def get(self, timeout: Optional[float] = None) -> Optional[RealtimeEvent]:
        """Next event, or None on timeout/close."""

    @abstractmethod
    async def close(self) -> None:
        """Stop receiving events and release resources."""

    async def __aiter__(self) -> AsyncIterator[RealtimeEvent]:
        while not self.closed:
            event = await self.get(timeout=1.0)
            if event is not None:
                yield event


class RealtimeFeed(ABC):
    """Pub/sub transport for mutation events."""

    @abstractmethod
    async def publish(self, channel: str, event: RealtimeEvent) -> int:
        """Publish to one channel. Returns number of receivers (if known)."""

    @abstractmethod
    async def subscribe(self, channels: list[str]) -> Subscription:
        """Open a subscription."""

    async def broadcast(self, event: RealtimeEvent) -> None:
        """Publish an event to every channel it belongs on."""
        for channel in channels_for_event(event):
            await self.publish(channel, event)


# --- In-process ---


class _QueueSubscription(Subscription):
    def __init__(self, feed: "InMemoryRealtimeFeed", channels: list[str]):
        super().__init__(channels)
        self._feed = feed
        self.queue: asyncio.Queue = asyncio.Queue()

    async def get(self, timeout: Optional[float] = None) -> Optional[RealtimeEvent]:
        if self.closed:
            return None
        try:
            if timeout is None:
                return await self.queue.get()
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._feed._detach(self)


class InMemoryRealtimeFeed(RealtimeFeed):
    """In-process feed. One queue per subscription."""

    def __init__(self):
        self._subscribers: dict[str, set[_QueueSubscription]] = {}

    async def publish(self, channel: str, event: RealtimeEvent) -> int:
        receivers = self._subscribers.get(channel, set())
        for subscription in receivers:
            subscription.queue.put_nowait(event)
        return len(receivers)

    async def subscribe(self, channels: list[str]) -> Subscription:
        subscription = _QueueSubscription(self, channels)
        for channel in channels:
            self._subscribers.setdefault(channel, set()).add(subscription)
        return subscription

    def _detach(self, subscription: _QueueSubscription) -> None:
        for channel in subscription.channels:
            receivers = self._subscribers.get(channel)
            if receivers is not None:
                receivers.discard(subscription)
                if not receivers:
                    del self._subscribers[channel]

    def subscriber_count(self, channel: Optional[str] = None) -> int:
        """Open subscriptions (on one channel, or in total)."""
        if channel is not None:
            return len(self._subscribers.get(channel, set()))
        return len({s for subs in self._subscribers.values() for s in subs})


# --- Redis ---


class _RedisSubscription(Subscription):
    def __init__(self, pubsub, channels: list[str]):
        super().__init__(channels)
        self._pubsub = pubsub

    async def get(self, timeout: Optional[float] = None) -> Optional[RealtimeEvent]:
        if self.closed:
            return None
        try:
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True,
                timeout=timeout or 0.0,
            )
        except RedisError as e:
            logger.error(f"Realtime receive failed on {self.channels}: {e}")
            return None

        if message is None or message.get("type") != "message":
            return None

        try:
            return RealtimeEvent.from_json(message["data"])
        except (ValueError, KeyError) as e:
            logger.warning(f"Dropping malformed realtime event: {e}")
            return None

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._pubsub.unsubscribe(*self.channels)
            await self._pubsub.aclose()
        except RedisError as e:
            logger.error(f"Error closing realtime subscription: {e}")


class RedisRealtimeFeed(RealtimeFeed):
    """Redis pub/sub feed."""

    def __init__(self, client: Redis):
        self.client = client

    async def publish(self, channel: str, event: RealtimeEvent) -> int:
        try:
            return await self.client.publish(channel, event.to_json())
        except RedisError as e:
            logger.error(f"Realtime publish to {channel} failed: {e}")
            return 0

    async def subscribe(self, channels: list[str]) -> Subscription:
        pubsub = self.client.pubsub()
        await pubsub.subscribe(*channels)
        logger.debug(f"Subscribed to {channels}")
        return _RedisSubscription(pubsub, channels)


# Singletons
_memory_feed: Optional[InMemoryRealtimeFeed] = None


def get_in_memory_feed() -> InMemoryRealtimeFeed:
    """Get the process-wide in-memory feed."""
    global _memory_feed
    if _memory_feed is None:
        _memory_feed = InMemoryRealtimeFeed()
    return _memory_feed


async def get_realtime_feed() -> RealtimeFeed:
    """Get the feed matching the configured store backend.

    Falls back to the in-process feed when Redis is unavailable.
    """
    if settings.use_in_memory_store and settings.is_development:
        return get_in_memory_feed()

    client = await get_redis()
    if client is None:
        logger.warning("Redis unavailable - realtime updates limited to this process")
        return get_in_memory_feed()
    return RedisRealtimeFeed(client)

"""
Request dependencies.

Identity comes from request headers and is turned into an explicit Actor
that routes pass into every call. Service objects are process singletons
built around the configured store backend.
"""

import logging
from typing import Optional

from fastapi import Header, HTTPException, status

from dentalbook.config import settings
from dentalbook.core.appointments.cache import AppointmentCache
from dentalbook.core.lifecycle.engine import LifecycleEngine
from dentalbook.core.lifecycle.side_effects import SideEffectDispatcher
from dentalbook.core.models import Actor, ActorRole
from dentalbook.core.realtime.sync import SubscriptionRegistry
from dentalbook.core.scheduling.availability import AvailabilityResolver
from dentalbook.core.scheduling.transaction import BookingTransaction
from dentalbook.infra.notifications import get_email_client
from dentalbook.infra.store import AppointmentStore
from dentalbook.infra.store_client import get_store

logger = logging.getLogger(__name__)


def build_actor(
    actor_id: Optional[str],
    role: Optional[str],
    clinic_id: Optional[str] = None,
) -> Actor:
    """Validate identity values and build an Actor.

    Raises:
        HTTPException: 401 when the id is missing, 400 on an unknown role
            or staff without a clinic
    """
    if not actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor-ID header is required",
        )
    try:
        actor_role = ActorRole((role or ActorRole.PATIENT.value).lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown role: {role}",
        )
    if actor_role == ActorRole.STAFF and not clinic_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Clinic-ID header is required for staff",
        )
    return Actor(id=actor_id, role=actor_role, clinic_id=clinic_id or None)


async def get_actor(
    x_actor_id: Optional[str] = Header(
        default=None,
        alias="X-Actor-ID",
        description="Authenticated user id",
    ),
    x_actor_role: Optional[str] = Header(
        default=None,
        alias="X-Actor-Role",
        description="patient, staff or admin",
    ),
    x_clinic_id: Optional[str] = Header(
        default=None,
        alias="X-Clinic-ID",
        description="Clinic scope of a staff member",
    ),
) -> Actor:
    """Current actor from request headers."""
    return build_actor(x_actor_id, x_actor_role, x_clinic_id)


# Singletons
_dispatcher: Optional[SideEffectDispatcher] = None
_engine: Optional[LifecycleEngine] = None
_resolver: Optional[AvailabilityResolver] = None
_registry: Optional[SubscriptionRegistry] = None


def get_appointment_store() -> AppointmentStore:
    return get_store()


def get_dispatcher() -> SideEffectDispatcher:
    """Get singleton side-effect dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = SideEffectDispatcher(get_store(), email_client=get_email_client())
    return _dispatcher


def get_engine() -> LifecycleEngine:
    """Get singleton lifecycle engine."""
    global _engine
    if _engine is None:
        _engine = LifecycleEngine(
            get_store(),
            get_dispatcher(),
            cache=AppointmentCache(max_entries=settings.appointment_cache_size),
        )
    return _engine


def get_resolver() -> AvailabilityResolver:
    """Get singleton availability resolver."""
    global _resolver
    if _resolver is None:
        _resolver = AvailabilityResolver(get_store())
    return _resolver


def get_transaction() -> BookingTransaction:
    """Booking transaction wired to the engine's post-booking side effects."""
    return BookingTransaction(get_store(), after_booking=get_engine().after_booking)


def get_subscription_registry() -> SubscriptionRegistry:
    """Get singleton realtime subscription registry."""
    global _registry
    if _registry is None:
        _registry = SubscriptionRegistry()
    return _registry


def reset_dependencies() -> None:
    """Drop cached singletons (tests)."""
    global _dispatcher, _engine, _resolver, _registry
    _dispatcher = None
    _engine = None
    _resolver = None
    _registry = None

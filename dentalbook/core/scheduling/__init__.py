"""
Scheduling Module

Availability resolution, the booking wizard state machine and the atomic
booking transaction.

Usage:
    from dentalbook.core.scheduling import (
        AvailabilityResolver,
        BookingTransaction,
        BookingWizard,
        get_wizard_session_manager,
    )

    manager = await get_wizard_session_manager()
    session = await manager.create(actor.id)
    wizard = BookingWizard(session, actor, resolver=AvailabilityResolver(store))
    await wizard.select_clinic("clinic-1")
    await wizard.advance()
"""

# Slots
from dentalbook.core.scheduling.slots import (
    compute_slots,
    is_slot_free,
    overlaps,
    total_duration,
)

# Wizard state
from dentalbook.core.scheduling.state import (
    STEP_ORDER,
    WizardStep,
    validate_step,
)
from dentalbook.core.scheduling.draft import (
    BookingDraft,
    BookingType,
    WizardSession,
)
from dentalbook.core.scheduling.session import (
    WizardSessionManager,
    get_wizard_session_manager,
)

# Rate control
from dentalbook.core.scheduling.throttle import (
    ActionThrottle,
    Debouncer,
    PeriodicTimer,
)

# Resolver, wizard and transaction
from dentalbook.core.scheduling.availability import AvailabilityResolver
from dentalbook.core.scheduling.wizard import (
    BookingWizard,
    HistoryNavigationAdapter,
    NavigationAction,
    NavigationAdapter,
    NavigationDirective,
    NullNavigationAdapter,
)
from dentalbook.core.scheduling.transaction import (
    BookingResult,
    BookingTransaction,
)

__all__ = [
    # Slots
    "compute_slots",
    "is_slot_free",
    "overlaps",
    "total_duration",
    # Wizard state
    "STEP_ORDER",
    "WizardStep",
    "validate_step",
    "BookingDraft",
    "BookingType",
    "WizardSession",
    "WizardSessionManager",
    "get_wizard_session_manager",
    # Rate control
    "ActionThrottle",
    "Debouncer",
    "PeriodicTimer",
    # Resolver, wizard and transaction
    "AvailabilityResolver",
    "BookingWizard",
    "HistoryNavigationAdapter",
    "NavigationAction",
    "NavigationAdapter",
    "NavigationDirective",
    "NullNavigationAdapter",
    "BookingResult",
    "BookingTransaction",
]

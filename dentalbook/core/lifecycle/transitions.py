"""Appointment lifecycle graph."""

from dataclasses import dataclass
from enum import Enum
from typing import Set

from dentalbook.core.errors import ConflictError, PolicyError
from dentalbook.core.models import Actor, ActorRole, Appointment, AppointmentStatus


class TransitionAction(str, Enum):
    """Status-changing actions."""

    APPROVE = "approve"
    REJECT = "reject"
    COMPLETE = "complete"
    NO_SHOW = "no_show"
    CANCEL = "cancel"


# Valid status transitions
VALID_TRANSITIONS: dict[AppointmentStatus, Set[AppointmentStatus]] = {
    AppointmentStatus.PENDING: {
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CANCELLED,
    },
    AppointmentStatus.CONFIRMED: {
        AppointmentStatus.COMPLETED,
        AppointmentStatus.NO_SHOW,
        AppointmentStatus.CANCELLED,
    },
    AppointmentStatus.COMPLETED: set(),
    AppointmentStatus.CANCELLED: set(),
    AppointmentStatus.NO_SHOW: set(),
}


@dataclass(frozen=True)
class ActionRule:
    """Who may perform an action, from which states, and where it leads."""

    target: AppointmentStatus
    from_states: frozenset
    roles: frozenset
    reason_required: bool = False


STAFF_ROLES = frozenset({ActorRole.STAFF, ActorRole.ADMIN})

ACTION_RULES: dict[TransitionAction, ActionRule] = {
    TransitionAction.APPROVE: ActionRule(
        target=AppointmentStatus.CONFIRMED,
        from_states=frozenset({AppointmentStatus.PENDING}),
        roles=STAFF_ROLES,
    ),
    TransitionAction.REJECT: ActionRule(
        target=AppointmentStatus.CANCELLED,
        from_states=frozenset({AppointmentStatus.PENDING}),
        roles=STAFF_ROLES,
        reason_required=True,
    ),
    TransitionAction.COMPLETE: ActionRule(
        target=AppointmentStatus.COMPLETED,
        from_states=frozenset({AppointmentStatus.CONFIRMED}),
        roles=STAFF_ROLES,
    ),
    TransitionAction.NO_SHOW: ActionRule(
        target=AppointmentStatus.NO_SHOW,
        from_states=frozenset({AppointmentStatus.CONFIRMED}),
        roles=STAFF_ROLES,
    ),
    TransitionAction.CANCEL: ActionRule(
        target=AppointmentStatus.CANCELLED,
        from_states=frozenset({AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED}),
        roles=frozenset({ActorRole.PATIENT}) | STAFF_ROLES,
        reason_required=True,
    ),
}


def can_transition(from_status: AppointmentStatus, to_status: AppointmentStatus) -> bool:
    """Check if a status transition is valid."""
    return to_status in VALID_TRANSITIONS.get(from_status, set())


def get_valid_transitions(status: AppointmentStatus) -> Set[AppointmentStatus]:
    """Get all valid transitions from a status."""
    return VALID_TRANSITIONS.get(status, set())


def is_terminal_status(status: AppointmentStatus) -> bool:
    """Check if status is terminal (no further transitions)."""
    return not VALID_TRANSITIONS.get(status)


def is_valid_history(statuses: list[AppointmentStatus]) -> bool:
    """Check an observed status sequence is a path through the graph.

    Repeated observations of the same status are allowed.
    """
    for previous, current in zip(statuses, statuses[1:]):
        if previous != current and not can_transition(previous, current):
            return False
    return True


def check_action(
    action: TransitionAction,
    appointment: Appointment,
    actor: Actor,
) -> AppointmentStatus:
    """Validate an action against role, ownership and current status.

    Args:
        action: Requested action
        appointment: Current view of the appointment
        actor: Acting identity

    Returns:
        The target status

    Raises:
        PolicyError: role or ownership does not permit the action
        ConflictError: appointment is not in a state the action applies to
    """
    rule = ACTION_RULES[action]

    if actor.role not in rule.roles:
        raise PolicyError(
            f"A {actor.role.value} cannot {action.value.replace('_', ' ')} appointments",
            code="role_not_permitted",
        )

    if actor.role == ActorRole.PATIENT and appointment.patient_id != actor.id:
        raise PolicyError("You can only manage your own appointments", code="forbidden")

    if actor.role == ActorRole.STAFF and actor.clinic_id and appointment.clinic_id != actor.clinic_id:
        raise PolicyError("Appointment belongs to another clinic", code="forbidden")

    if appointment.status not in rule.from_states:
        raise ConflictError(
            f"Appointment is {appointment.status.value} and cannot be "
            f"moved to {rule.target.value}",
            code="invalid_transition",
        )

    return rule.target

"""
Lifecycle Module

Status transitions, the cancellation policy, treatment-plan cascades and
side-effect dispatch.
"""

from dentalbook.core.lifecycle.transitions import (
    ACTION_RULES,
    VALID_TRANSITIONS,
    TransitionAction,
    can_transition,
    check_action,
    get_valid_transitions,
    is_terminal_status,
    is_valid_history,
)
from dentalbook.core.lifecycle.policy import (
    CancellationDecision,
    can_cancel,
    cancellation_deadline,
    explain_cancellation,
)
from dentalbook.core.lifecycle.treatment import (
    CascadeResult,
    cascade_cancellation,
    cascade_completion,
)
from dentalbook.core.lifecycle.side_effects import (
    EmailMessage,
    SideEffectDispatcher,
    SideEffectEvent,
    SideEffectKind,
)
from dentalbook.core.lifecycle.engine import LifecycleEngine, TransitionResult

__all__ = [
    # Transitions
    "ACTION_RULES",
    "VALID_TRANSITIONS",
    "TransitionAction",
    "can_transition",
    "check_action",
    "get_valid_transitions",
    "is_terminal_status",
    "is_valid_history",
    # Policy
    "CancellationDecision",
    "can_cancel",
    "cancellation_deadline",
    "explain_cancellation",
    # Treatment plans
    "CascadeResult",
    "cascade_cancellation",
    "cascade_completion",
    # Side effects
    "EmailMessage",
    "SideEffectDispatcher",
    "SideEffectEvent",
    "SideEffectKind",
    # Engine
    "LifecycleEngine",
    "TransitionResult",
]

"""
Treatment-plan cascade.

Only a completed visit counts toward visits_completed, and only a
confirmed appointment can be completed. Cancelling or rejecting a linked
appointment therefore deactivates the link and leaves the counter alone.
A link found already completed at cancellation time is inconsistent data:
the counter is kept and the plan is flagged for staff review.

visits_completed never exceeds total_visits_planned.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from dentalbook.core.models import TreatmentPlanLink, TreatmentPlanProgress

logger = logging.getLogger(__name__)


@dataclass
class CascadeResult:
    """What a cascade changed."""

    link: TreatmentPlanLink
    progress: TreatmentPlanProgress
    flagged_for_review: bool = False
    counter_changed: bool = False


def clamp_progress(progress: TreatmentPlanProgress) -> TreatmentPlanProgress:
    """Keep 0 <= visits_completed <= total_visits_planned."""
    completed = max(0, progress.visits_completed)
    if progress.total_visits_planned is not None:
        completed = min(completed, progress.total_visits_planned)
    progress.visits_completed = completed
    return progress


def cascade_cancellation(
    link: TreatmentPlanLink,
    progress: TreatmentPlanProgress,
) -> CascadeResult:
    """Apply the cancellation/rejection of a linked appointment.

    Args:
        link: The appointment's active link
        progress: Current plan counters

    Returns:
        CascadeResult with the updated link and counters
    """
    link.is_active = False
    flagged = False

    if link.is_completed:
        progress.needs_review = True
        flagged = True
        logger.warning(
            f"Cancelled visit {link.visit_number} of plan {link.treatment_plan_id} "
            f"was already counted; flagged for review"
        )

    return CascadeResult(
        link=link,
        progress=clamp_progress(progress),
        flagged_for_review=flagged,
    )


def cascade_completion(
    link: TreatmentPlanLink,
    progress: TreatmentPlanProgress,
) -> CascadeResult:
    """Count a completed visit toward the plan. Idempotent per link."""
    changed = False
    if not link.is_completed:
        link.is_completed = True
        before = progress.visits_completed
        progress.visits_completed = before + 1
        clamp_progress(progress)
        changed = progress.visits_completed != before

    return CascadeResult(link=link, progress=progress, counter_changed=changed)


def next_visit_number(links: list[TreatmentPlanLink]) -> int:
    """Visit number for a new booking linked to a plan."""
    active = [link.visit_number for link in links if link.is_active or link.is_completed]
    return max(active, default=0) + 1


def impact_summary(progress: Optional[TreatmentPlanProgress]) -> str:
    """One-line progress description for impact notifications."""
    if progress is None:
        return ""
    if progress.total_visits_planned:
        return (
            f"{progress.visits_completed} of {progress.total_visits_planned} "
            f"visits completed"
        )
    return f"{progress.visits_completed} visits completed"

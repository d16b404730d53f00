"""
Appointment API.

Listing plus the lifecycle actions. Every action answers with an explicit
TransitionResult; failures use the status code of their error category
and still carry the refreshed appointment when there is one.
"""

import logging
from datetime import date
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from dentalbook.api.deps import get_actor, get_appointment_store, get_engine
from dentalbook.api.errors import error_status
from dentalbook.core.appointments.listing import AppointmentFilters, AppointmentList
from dentalbook.core.errors import NotFoundError, ValidationError
from dentalbook.core.lifecycle.engine import TransitionResult
from dentalbook.core.models import Actor, AppointmentStatus
from dentalbook.infra.store import CompletionDetails

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["Appointments"])

# Upper bound on rows pulled for the overview
OVERVIEW_MAX_PAGES = 10


# === Request models ===


class ApproveRequest(BaseModel):
    staff_notes: Optional[str] = Field(default=None, max_length=2000)


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)
    category: Optional[str] = Field(
        default=None,
        description="Rejection category (default staff_decision)",
        examples=["doctor_unavailable"],
    )
    suggest_reschedule: bool = False
    alternative_dates: list[date] = Field(default_factory=list)


class CompleteRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=4000)
    services_completed: list[str] = Field(default_factory=list)
    follow_up_required: bool = False
    follow_up_notes: Optional[str] = None
    treatment_plan_fields: Optional[dict] = None


class NoShowRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=2000)


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


def _parse_statuses(values: Optional[list[str]]) -> list[AppointmentStatus]:
    statuses = []
    for value in values or []:
        try:
            statuses.append(AppointmentStatus(value))
        except ValueError:
            raise ValidationError(f"Unknown status: {value}", code="invalid_status")
    return statuses


def _result_response(result: TransitionResult) -> Union[dict, JSONResponse]:
    if result.success:
        return result.to_dict()
    return JSONResponse(status_code=error_status(result.error), content=result.to_dict())


# === Listing ===


@router.get("", summary="List appointments")
async def list_appointments(
    status_filter: Optional[list[str]] = Query(default=None, alias="status"),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(get_actor),
) -> dict:
    """Appointments in the actor's scope, one page at a time."""
    page = await get_appointment_store().list_appointments(
        actor,
        status=_parse_statuses(status_filter) or None,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    return {
        "appointments": [a.to_dict() for a in page.appointments],
        "total_count": page.total_count,
        "has_more": page.has_more,
    }


@router.get("/overview", summary="Status counts and role views")
async def overview(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    search: Optional[str] = None,
    actor: Actor = Depends(get_actor),
) -> dict:
    """
    Dashboard data.

    Staff get pending requests and today's visits, patients their upcoming
    and past appointments.
    search narrows the views but not the stats.
    """
    listing = AppointmentList(get_appointment_store(), actor)
    await listing.refresh(AppointmentFilters(date_from=date_from, date_to=date_to, search=search))
    for _ in range(OVERVIEW_MAX_PAGES - 1):
        if not listing.has_more:
            break
        await listing.load_more()

    return {
        "stats": listing.stats(),
        "total_count": listing.total_count,
        "views": {
            name: [a.to_dict() for a in items]
            for name, items in listing.views().items()
        },
    }


# === Lifecycle actions ===


@router.post("/{appointment_id}/approve", summary="Approve a pending appointment")
async def approve(
    appointment_id: str,
    request: Optional[ApproveRequest] = None,
    actor: Actor = Depends(get_actor),
):
    request = request or ApproveRequest()
    result = await get_engine().approve(actor, appointment_id, request.staff_notes)
    return _result_response(result)


@router.post("/{appointment_id}/reject", summary="Reject a pending appointment")
async def reject(
    appointment_id: str,
    request: RejectRequest,
    actor: Actor = Depends(get_actor),
):
    result = await get_engine().reject(
        actor,
        appointment_id,
        request.reason,
        category=request.category,
        suggest_reschedule=request.suggest_reschedule,
        alternative_dates=request.alternative_dates,
    )
    return _result_response(result)


@router.post("/{appointment_id}/complete", summary="Complete a confirmed appointment")
async def complete(
    appointment_id: str,
    request: Optional[CompleteRequest] = None,
    actor: Actor = Depends(get_actor),
):
    request = request or CompleteRequest()
    details = CompletionDetails(
        notes=request.notes,
        services_completed=request.services_completed,
        follow_up_required=request.follow_up_required,
        follow_up_notes=request.follow_up_notes,
        treatment_plan_fields=request.treatment_plan_fields,
    )
    result = await get_engine().complete(actor, appointment_id, details)
    return _result_response(result)


@router.post("/{appointment_id}/no-show", summary="Mark a confirmed appointment as missed")
async def no_show(
    appointment_id: str,
    request: Optional[NoShowRequest] = None,
    actor: Actor = Depends(get_actor),
):
    request = request or NoShowRequest()
    result = await get_engine().mark_no_show(actor, appointment_id, request.notes)
    return _result_response(result)


@router.post("/{appointment_id}/cancel", summary="Cancel an appointment")
async def cancel(
    appointment_id: str,
    request: CancelRequest,
    actor: Actor = Depends(get_actor),
):
    """Patients must cancel before the clinic's cancellation window closes."""
    result = await get_engine().cancel(actor, appointment_id, request.reason)
    return _result_response(result)


@router.get("/{appointment_id}/can-cancel", summary="Cancellation eligibility")
async def can_cancel(
    appointment_id: str,
    actor: Actor = Depends(get_actor),
) -> dict:
    """Advisory check used to decide whether to offer a cancel control."""
    decision = await get_engine().can_cancel(actor, appointment_id)
    return decision.to_dict()


@router.get("/{appointment_id}", summary="Get an appointment")
async def get_appointment(
    appointment_id: str,
    actor: Actor = Depends(get_actor),
) -> dict:
    appointment = await get_appointment_store().get_appointment(actor, appointment_id)
    if appointment is None:
        raise NotFoundError("Appointment not found", code="appointment_not_found")
    return appointment.to_dict()

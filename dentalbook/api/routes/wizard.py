"""
Booking Wizard API.

Each request loads the actor's wizard session, applies one operation and
saves it back. Responses carry the wizard snapshot plus the navigation
directives (push/replace/exit) the client should apply to its history.
"""

import logging
from contextlib import asynccontextmanager
from datetime import date, time
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from dentalbook.api.deps import (
    get_actor,
    get_appointment_store,
    get_resolver,
    get_transaction,
)
from dentalbook.core.models import Actor
from dentalbook.core.scheduling.session import get_wizard_session_manager
from dentalbook.core.scheduling.wizard import BookingWizard, HistoryNavigationAdapter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wizard", tags=["Booking Wizard"])


class DraftUpdate(BaseModel):
    """Partial draft update. Only fields that are sent are applied."""

    clinic_id: Optional[str] = Field(default=None, examples=["clinic-1"])
    service_ids: Optional[list[str]] = Field(
        default=None,
        description="Replaces the selected services (max 3)",
    )
    toggle_service: Optional[str] = Field(
        default=None,
        description="Add or remove a single service",
    )
    doctor_id: Optional[str] = None
    appointment_date: Optional[date] = None
    appointment_time: Optional[time] = None
    symptoms: Optional[str] = Field(default=None, max_length=2000)
    treatment_plan_id: Optional[str] = None


class WizardResponse(BaseModel):
    """Wizard snapshot plus navigation directives."""

    wizard: dict
    navigation: list[dict] = Field(default_factory=list)
    booking: Optional[dict] = None


@asynccontextmanager
async def wizard_session(session_id: str, actor: Actor) -> AsyncIterator[tuple[BookingWizard, HistoryNavigationAdapter]]:
    """Load a wizard, yield it, and save the session whatever happened."""
    manager = await get_wizard_session_manager()
    session = await manager.get(actor.id, session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Wizard session not found",
        )

    navigation = HistoryNavigationAdapter()
    wizard = BookingWizard(
        session,
        actor,
        resolver=get_resolver(),
        store=get_appointment_store(),
        navigation=navigation,
    )
    try:
        yield wizard, navigation
    finally:
        await manager.save(session)


def _response(
    wizard: BookingWizard,
    navigation: HistoryNavigationAdapter,
    booking: Optional[dict] = None,
) -> WizardResponse:
    return WizardResponse(
        wizard=wizard.to_dict(),
        navigation=[d.to_dict() for d in navigation.drain()],
        booking=booking,
    )


@router.post(
    "",
    response_model=WizardResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a booking wizard",
)
async def create_wizard(actor: Actor = Depends(get_actor)) -> WizardResponse:
    """Create a wizard session at the clinic step."""
    manager = await get_wizard_session_manager()
    session = await manager.create(actor.id)
    navigation = HistoryNavigationAdapter()
    wizard = BookingWizard(session, actor, resolver=get_resolver(), navigation=navigation)
    logger.info(f"Wizard session {session.session_id} started for {actor.id}")
    return _response(wizard, navigation)


@router.get("/{session_id}", response_model=WizardResponse, summary="Get wizard state")
async def get_wizard(session_id: str, actor: Actor = Depends(get_actor)) -> WizardResponse:
    async with wizard_session(session_id, actor) as (wizard, navigation):
        return _response(wizard, navigation)


@router.patch("/{session_id}/draft", response_model=WizardResponse, summary="Update the draft")
async def update_draft(
    session_id: str,
    update: DraftUpdate,
    actor: Actor = Depends(get_actor),
) -> WizardResponse:
    """
    Apply draft changes.

    Fields are applied in wizard order (clinic, services, doctor, date,
    time) so that the clearing rules of earlier selections run first.
    """
    fields = update.model_fields_set
    async with wizard_session(session_id, actor) as (wizard, navigation):
        if "clinic_id" in fields and update.clinic_id:
            await wizard.select_clinic(update.clinic_id)
        if "service_ids" in fields:
            await wizard.set_services(update.service_ids or [])
        if update.toggle_service:
            await wizard.toggle_service(update.toggle_service)
        if "doctor_id" in fields and update.doctor_id:
            await wizard.select_doctor(update.doctor_id)
        if "appointment_date" in fields and update.appointment_date:
            await wizard.select_date(update.appointment_date)
        if "appointment_time" in fields and update.appointment_time:
            await wizard.select_time(update.appointment_time)
        if "symptoms" in fields:
            wizard.set_symptoms(update.symptoms)
        if "treatment_plan_id" in fields:
            wizard.link_treatment_plan(update.treatment_plan_id)
        return _response(wizard, navigation)


@router.post("/{session_id}/advance", response_model=WizardResponse, summary="Next step")
async def advance(session_id: str, actor: Actor = Depends(get_actor)) -> WizardResponse:
    """Move forward. Fails with 422 and an unchanged step if the current step is incomplete."""
    async with wizard_session(session_id, actor) as (wizard, navigation):
        await wizard.advance()
        return _response(wizard, navigation)


@router.post("/{session_id}/retreat", response_model=WizardResponse, summary="Previous step")
async def retreat(session_id: str, actor: Actor = Depends(get_actor)) -> WizardResponse:
    async with wizard_session(session_id, actor) as (wizard, navigation):
        wizard.retreat()
        return _response(wizard, navigation)


@router.post("/{session_id}/back", response_model=WizardResponse, summary="Platform back event")
async def back(session_id: str, actor: Actor = Depends(get_actor)) -> WizardResponse:
    """Map a history back event onto the wizard. At the first step this exits the flow."""
    async with wizard_session(session_id, actor) as (wizard, navigation):
        wizard.handle_back()
        return _response(wizard, navigation)


@router.post("/{session_id}/reset", response_model=WizardResponse, summary="Start over")
async def reset(session_id: str, actor: Actor = Depends(get_actor)) -> WizardResponse:
    async with wizard_session(session_id, actor) as (wizard, navigation):
        wizard.reset()
        return _response(wizard, navigation)


@router.get("/{session_id}/slots", response_model=WizardResponse, summary="Refresh slots")
async def slots(
    session_id: str,
    force: bool = False,
    actor: Actor = Depends(get_actor),
) -> WizardResponse:
    """Re-resolve availability for the current doctor, date and services."""
    async with wizard_session(session_id, actor) as (wizard, navigation):
        await wizard.refresh_slots(force=force)
        return _response(wizard, navigation)


@router.post("/{session_id}/submit", response_model=WizardResponse, summary="Submit the booking")
async def submit(session_id: str, actor: Actor = Depends(get_actor)) -> WizardResponse:
    """
    Submit the draft from the confirm step.

    A taken slot answers 409 and the saved wizard is back at the datetime
    step with fresh slots.
    """
    async with wizard_session(session_id, actor) as (wizard, navigation):
        result = await wizard.submit(get_transaction())
        logger.info(f"Booking {result.appointment_id} submitted by {actor.id}")
        return _response(wizard, navigation, booking=result.to_dict())

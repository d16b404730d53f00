"""
Realtime WebSocket endpoint.

A connected client receives the mutation events of its appointment scope
and its notifications. When a wizard session id is given and slot
auto-refresh is enabled, fresh slots for that session are pushed on a
timer. The subscription and the timer are torn down with the socket.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status

from dentalbook.api.deps import build_actor, get_resolver, get_subscription_registry
from dentalbook.config import settings
from dentalbook.core.appointments.cache import AppointmentCache
from dentalbook.core.errors import BookingError
from dentalbook.core.models import Actor, AppointmentStatus, Notification
from dentalbook.core.realtime.sync import RealtimeSync
from dentalbook.core.scheduling.session import get_wizard_session_manager
from dentalbook.core.scheduling.throttle import PeriodicTimer
from dentalbook.core.scheduling.wizard import BookingWizard
from dentalbook.infra.realtime import RealtimeEvent, get_realtime_feed

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])


def _actor_from_socket(websocket: WebSocket) -> Actor:
    """Identity from headers, falling back to query params (browsers cannot set WS headers)."""
    headers = websocket.headers
    params = websocket.query_params
    return build_actor(
        headers.get("x-actor-id") or params.get("actor_id"),
        headers.get("x-actor-role") or params.get("role"),
        headers.get("x-clinic-id") or params.get("clinic_id"),
    )


async def _push_slots(websocket: WebSocket, actor: Actor, session_id: str) -> None:
    """Re-resolve and push slots for a wizard session sitting on the datetime step."""
    manager = await get_wizard_session_manager()
    session = await manager.get(actor.id, session_id)
    if session is None:
        return
    wizard = BookingWizard(session, actor, resolver=get_resolver())
    if not wizard.draft.doctor_id or wizard.draft.appointment_date is None:
        return
    try:
        await wizard.refresh_slots()
    except BookingError as e:
        logger.warning(f"Slot auto-refresh for {session_id} failed: {e.code}")
        return
    await manager.save(session)
    await websocket.send_json({
        "type": "slots",
        "session_id": session_id,
        "slots": [s.to_dict() for s in wizard.slots],
        "draft": wizard.draft.to_dict(),
    })


async def stop_tasks(tasks: list[asyncio.Task]) -> None:
    """Cancel unfinished tasks and wait until they are gone."""
    for task in tasks:
        if not task.done():
            task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


@router.websocket("/realtime")
async def realtime(websocket: WebSocket, wizard_session: Optional[str] = None) -> None:
    """Stream appointment and notification mutations to the client."""
    try:
        actor = _actor_from_socket(websocket)
    except HTTPException as e:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(e.detail))
        return

    await websocket.accept()
    outbox: asyncio.Queue = asyncio.Queue()

    def on_event(event: RealtimeEvent) -> None:
        outbox.put_nowait({"type": "event", "event": {
            "table": event.table,
            "type": event.type.value,
            "new": event.new,
            "old": event.old,
        }})

    def on_status_change(
        appointment_id: str,
        old: Optional[AppointmentStatus],
        new: Optional[AppointmentStatus],
    ) -> None:
        outbox.put_nowait({
            "type": "status_change",
            "appointment_id": appointment_id,
            "old_status": old.value if old else None,
            "new_status": new.value if new else None,
        })

    def on_notification(notification: Notification, is_new: bool) -> None:
        outbox.put_nowait({
            "type": "notification",
            "is_new": is_new,
            "notification": notification.to_dict(),
        })

    sync = RealtimeSync(
        await get_realtime_feed(),
        actor,
        AppointmentCache(),
        on_status_change=on_status_change,
        on_notification=on_notification,
        on_event=on_event,
    )
    registry = get_subscription_registry()
    session_key = f"ws:{actor.id}:{id(websocket)}"

    timer: Optional[PeriodicTimer] = None
    if wizard_session and settings.slot_refresh_interval > 0:
        timer = PeriodicTimer(
            settings.slot_refresh_interval,
            lambda: _push_slots(websocket, actor, wizard_session),
            name=f"slot-refresh-{wizard_session}",
        )

    async def forward() -> None:
        while True:
            message = await outbox.get()
            await websocket.send_json(message)

    async def receive() -> None:
        # Client messages are ignored; this only detects disconnects
        while True:
            await websocket.receive_text()

    tasks: list[asyncio.Task] = []
    try:
        await sync.start()
        registry.register(session_key, sync)
        if timer is not None:
            timer.start()

        tasks = [asyncio.create_task(forward()), asyncio.create_task(receive())]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.error(f"Realtime socket for {actor.id} failed: {error}")
    except ValueError as e:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(e))
    finally:
        await stop_tasks(tasks)
        if timer is not None:
            await timer.cancel()
        await registry.close_session(session_key)
        if sync.active:
            await sync.stop()
        logger.debug(f"Realtime socket closed for {actor.id}")

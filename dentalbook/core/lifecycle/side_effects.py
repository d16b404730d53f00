"""
Side-effect dispatch.

The lifecycle engine emits typed events after a committed transition; a
separate worker delivers them (notification records, emails) with its own
retries and logging. Delivery failures end as logged SideEffectFailure and
never reach the transition's caller.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Optional

from dentalbook.config import settings
from dentalbook.core.errors import BookingError, SideEffectFailure
from dentalbook.core.models import Notification
from dentalbook.infra.notifications import EmailClient
from dentalbook.infra.store import AppointmentStore

logger = logging.getLogger(__name__)

# Most recent failures kept for inspection
MAX_FAILED_RECORDS = 200


class SideEffectKind(str, Enum):
    """Kinds of side effect."""

    NOTIFICATION = "notification"
    EMAIL = "email"


@dataclass
class EmailMessage:
    """An email to send."""

    to: str
    subject: str
    body: str
    email_type: str = "appointment_update"
    data: dict = field(default_factory=dict)


@dataclass
class SideEffectEvent:
    """One deliverable side effect."""

    kind: SideEffectKind
    appointment_id: Optional[str] = None
    notification: Optional[Notification] = None
    email: Optional[EmailMessage] = None
    attempts: int = 0

    @classmethod
    def for_notification(cls, notification: Notification) -> "SideEffectEvent":
        return cls(
            kind=SideEffectKind.NOTIFICATION,
            appointment_id=notification.appointment_id,
            notification=notification,
        )

    @classmethod
    def for_email(cls, email: EmailMessage, appointment_id: Optional[str] = None) -> "SideEffectEvent":
        return cls(kind=SideEffectKind.EMAIL, appointment_id=appointment_id, email=email)

    def describe(self) -> str:
        if self.kind == SideEffectKind.NOTIFICATION and self.notification:
            return f"notification:{self.notification.notification_type.value}"
        if self.kind == SideEffectKind.EMAIL and self.email:
            return f"email:{self.email.email_type}"
        return self.kind.value


class SideEffectDispatcher:
    """
    Queue + worker for side effects.

    emit() never blocks and never raises. start() launches the worker;
    stop() drains the queue (optionally) and cancels it.
    """

    def __init__(
        self,
        store: AppointmentStore,
        email_client: Optional[EmailClient] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        max_failed_records: int = MAX_FAILED_RECORDS,
    ):
        self.store = store
        self.email_client = email_client
        self.max_attempts = max_attempts or settings.side_effect_max_attempts
        self.retry_delay = settings.side_effect_retry_delay if retry_delay is None else retry_delay
        self.queue: asyncio.Queue[SideEffectEvent] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

        # Counters
        self.delivered = 0
        self.failure_count = 0
        self.failed: Deque[tuple[SideEffectEvent, SideEffectFailure]] = deque(maxlen=max_failed_records)

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def emit(self, event: SideEffectEvent) -> None:
        """Queue an event for delivery."""
        self.queue.put_nowait(event)
        logger.debug(f"Queued {event.describe()} for appointment {event.appointment_id}")

    async def start(self) -> None:
        """Start the worker."""
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="side-effect-dispatcher")
        logger.info("Side-effect dispatcher started")

    async def stop(self, drain: bool = True) -> None:
        """Stop the worker, delivering what is queued first if drain."""
        if drain and self.running:
            await self.queue.join()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
            logger.info("Side-effect dispatcher stopped")

    async def process_pending(self) -> int:
        """Deliver everything queued inline (no worker needed).

        Returns:
            Number of events processed
        """
        processed = 0
        while not self.queue.empty():
            event = self.queue.get_nowait()
            try:
                await self._deliver_with_retry(event)
            finally:
                self.queue.task_done()
            processed += 1
        return processed

    async def _run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self._deliver_with_retry(event)
            finally:
                self.queue.task_done()

    async def _deliver_with_retry(self, event: SideEffectEvent) -> None:
        while True:
            event.attempts += 1
            try:
                await self._deliver(event)
                self.delivered += 1
                return
            except BookingError as e:
                failure = e if isinstance(e, SideEffectFailure) else SideEffectFailure(
                    e.message, code=e.code
                )
                if not e.retryable or event.attempts >= self.max_attempts:
                    self.failed.append((event, failure))
                    self.failure_count += 1
                    logger.error(
                        f"Side effect {event.describe()} for appointment "
                        f"{event.appointment_id} failed after {event.attempts} attempts: "
                        f"{failure.message}"
                    )
                    return
                logger.warning(
                    f"Side effect {event.describe()} attempt {event.attempts} failed: "
                    f"{failure.message}; retrying"
                )
                await asyncio.sleep(self.retry_delay * event.attempts)
            except Exception as e:
                self.failed.append((event, SideEffectFailure(str(e), code="unexpected")))
                self.failure_count += 1
                logger.exception(
                    f"Unexpected error delivering {event.describe()} for appointment "
                    f"{event.appointment_id}: {e}"
                )
                return

    async def _deliver(self, event: SideEffectEvent) -> None:
        if event.kind == SideEffectKind.NOTIFICATION and event.notification is not None:
            await self.store.create_notification(event.notification)
        elif event.kind == SideEffectKind.EMAIL and event.email is not None:
            if self.email_client is None:
                logger.debug(f"No email client, skipping email to {event.email.to}")
                return
            await self.email_client.send_email(
                event.email.to,
                event.email.subject,
                event.email.body,
                email_type=event.email.email_type,
                data=event.email.data,
            )

"""
Call pacing for discovery, slot refresh and staff actions.

- Debouncer: identical concurrent calls share one request; repeated calls
  for the same key wait out a minimum interval, then fetch fresh.
- ActionThrottle: per-action cooldown for state-changing buttons.
- PeriodicTimer: cancellable repeating task; never fires after cancel().
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Hashable, Optional

from dentalbook.config import settings
from dentalbook.core.errors import ConflictError

logger = logging.getLogger(__name__)


class Debouncer:
    """Minimum inter-call interval per key, with in-flight sharing."""

    def __init__(
        self,
        min_interval_ms: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        interval = settings.discovery_min_interval_ms if min_interval_ms is None else min_interval_ms
        self.min_interval = interval / 1000
        self._clock = clock
        self._in_flight: dict[Hashable, asyncio.Future] = {}
        self._last_start: dict[Hashable, float] = {}

    async def run(
        self,
        key: Hashable,
        call: Callable[[], Awaitable[Any]],
        force: bool = False,
    ) -> Any:
        """Run call for key, coalescing with an in-flight call for the same key.

        Args:
            key: Identity of the resource being fetched
            call: Zero-argument coroutine factory
            force: Skip the interval wait (still shares in-flight calls)
        """
        pending = self._in_flight.get(key)
        if pending is not None:
            logger.debug(f"Sharing in-flight call for {key}")
            return await asyncio.shield(pending)

        self._prune()
        if not force:
            last = self._last_start.get(key)
            if last is not None:
                wait = self.min_interval - (self._clock() - last)
                if wait > 0:
                    await asyncio.sleep(wait)
                    pending = self._in_flight.get(key)
                    if pending is not None:
                        return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        self._last_start[key] = self._clock()
        try:
            result = await call()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Retrieved here so a failure with no sharers is not reported as unhandled
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._in_flight.pop(key, None)

    def _prune(self) -> None:
        """Forget start times that can no longer delay a call."""
        now = self._clock()
        expired = [k for k, started in self._last_start.items() if now - started >= self.min_interval]
        for key in expired:
            del self._last_start[key]


class ActionThrottle:
    """Reject repeats of the same action within a cooldown."""

    def __init__(
        self,
        cooldown_ms: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        cooldown = settings.action_cooldown_ms if cooldown_ms is None else cooldown_ms
        self.cooldown = cooldown / 1000
        self._clock = clock
        self._last: dict[Hashable, float] = {}

    def check(self, key: Hashable) -> None:
        """Record an attempt.

        Raises:
            ConflictError: the same action ran less than a cooldown ago
        """
        now = self._clock()
        self._prune(now)
        last = self._last.get(key)
        if last is not None and now - last < self.cooldown:
            raise ConflictError(
                "Please wait a moment before repeating this action",
                code="action_throttled",
            )
        self._last[key] = now

    def clear(self, key: Optional[Hashable] = None) -> None:
        if key is None:
            self._last.clear()
        else:
            self._last.pop(key, None)

    def _prune(self, now: float) -> None:
        expired = [k for k, last in self._last.items() if now - last >= self.cooldown]
        for key in expired:
            del self._last[key]


class PeriodicTimer:
    """Repeating async callback bound to an owner's lifetime."""

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "timer",
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.callback = callback
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start firing. No-op if already running or cancelled."""
        if self.active or self._cancelled:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)

    async def _loop(self) -> None:
        while not self._cancelled:
            await asyncio.sleep(self.interval)
            if self._cancelled:
                break
            try:
                await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Timer {self.name} callback failed: {e}")

    async def cancel(self) -> None:
        """Stop for good and wait for the task to finish."""
        self._cancelled = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

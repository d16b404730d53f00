"""Tests for debouncing, action cooldowns and the periodic timer."""

import asyncio

import pytest

from dentalbook.core.errors import ConflictError
from dentalbook.core.scheduling.throttle import ActionThrottle, Debouncer, PeriodicTimer


class FakeClock:
    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class TestDebouncer:
    """In-flight sharing and minimum interval."""

    @pytest.mark.asyncio
    async def test_concurrent_identical_calls_share_one_request(self):
        debouncer = Debouncer(min_interval_ms=0)
        calls = 0
        release = asyncio.Event()

        async def fetch():
            nonlocal calls
            calls += 1
            await release.wait()
            return ["09:00"]

        first = asyncio.create_task(debouncer.run("doc-1:2030-03-11", fetch))
        second = asyncio.create_task(debouncer.run("doc-1:2030-03-11", fetch))
        await asyncio.sleep(0)
        release.set()

        assert await first == ["09:00"]
        assert await second == ["09:00"]
        assert calls == 1

    @pytest.mark.asyncio
    async def test_different_keys_run_separately(self):
        debouncer = Debouncer(min_interval_ms=0)
        seen = []

        async def fetch(key):
            seen.append(key)
            return key

        await asyncio.gather(
            debouncer.run("a", lambda: fetch("a")),
            debouncer.run("b", lambda: fetch("b")),
        )

        assert sorted(seen) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_sequential_calls_fetch_fresh(self):
        debouncer = Debouncer(min_interval_ms=0)
        counter = iter(range(10))

        async def fetch():
            return next(counter)

        assert await debouncer.run("k", fetch) == 0
        assert await debouncer.run("k", fetch) == 1

    @pytest.mark.asyncio
    async def test_failure_is_shared_with_waiters(self):
        debouncer = Debouncer(min_interval_ms=0)
        release = asyncio.Event()

        async def fetch():
            await release.wait()
            raise RuntimeError("store down")

        first = asyncio.create_task(debouncer.run("k", fetch))
        second = asyncio.create_task(debouncer.run("k", fetch))
        await asyncio.sleep(0)
        release.set()

        with pytest.raises(RuntimeError):
            await first
        with pytest.raises(RuntimeError):
            await second

    @pytest.mark.asyncio
    async def test_waits_out_min_interval(self):
        clock = FakeClock()
        debouncer = Debouncer(min_interval_ms=1000, clock=clock)

        async def fetch():
            return "ok"

        await debouncer.run("k", fetch)
        clock.now += 0.99

        sleep_calls = []

        async def fake_sleep(seconds):
            sleep_calls.append(seconds)

        with pytest.MonkeyPatch.context() as mp:
            mp.setattr("dentalbook.core.scheduling.throttle.asyncio.sleep", fake_sleep)
            await debouncer.run("k", fetch)

        assert len(sleep_calls) == 1
        assert sleep_calls[0] == pytest.approx(0.01)

    @pytest.mark.asyncio
    async def test_force_skips_interval(self):
        clock = FakeClock()
        debouncer = Debouncer(min_interval_ms=1000, clock=clock)

        async def fetch():
            return "ok"

        await debouncer.run("k", fetch)
        # Would sleep a full second without force
        assert await asyncio.wait_for(debouncer.run("k", fetch, force=True), 0.5) == "ok"

    @pytest.mark.asyncio
    async def test_expired_start_times_are_forgotten(self):
        clock = FakeClock()
        debouncer = Debouncer(min_interval_ms=1000, clock=clock)

        async def fetch():
            return "ok"

        for day in range(50):
            await debouncer.run(("doc-1", day), fetch)
        clock.now += 1.0
        await debouncer.run(("doc-1", "next"), fetch)

        assert list(debouncer._last_start) == [("doc-1", "next")]


class TestActionThrottle:
    """Cooldown per action key."""

    def test_repeat_within_cooldown_rejected(self):
        clock = FakeClock()
        throttle = ActionThrottle(cooldown_ms=1000, clock=clock)

        throttle.check(("staff-1", "approve", "appt-1"))
        clock.now += 0.5

        with pytest.raises(ConflictError) as exc_info:
            throttle.check(("staff-1", "approve", "appt-1"))

        assert exc_info.value.code == "action_throttled"

    def test_allowed_after_cooldown(self):
        clock = FakeClock()
        throttle = ActionThrottle(cooldown_ms=1000, clock=clock)

        throttle.check("approve")
        clock.now += 1.0
        throttle.check("approve")

    def test_keys_are_independent(self):
        throttle = ActionThrottle(cooldown_ms=1000, clock=FakeClock())

        throttle.check(("staff-1", "approve", "appt-1"))
        throttle.check(("staff-1", "approve", "appt-2"))

    def test_expired_keys_are_pruned(self):
        clock = FakeClock()
        throttle = ActionThrottle(cooldown_ms=1000, clock=clock)

        for n in range(100):
            throttle.check(("staff-1", "approve", f"appt-{n}"))
        clock.now += 1.0
        throttle.check(("staff-1", "approve", "appt-new"))

        assert list(throttle._last) == [("staff-1", "approve", "appt-new")]

    def test_clear(self):
        throttle = ActionThrottle(cooldown_ms=1000, clock=FakeClock())
        throttle.check("approve")

        throttle.clear("approve")

        throttle.check("approve")


class TestPeriodicTimer:
    """Repeating callback lifecycle."""

    @pytest.mark.asyncio
    async def test_fires_repeatedly(self):
        fired = []

        async def tick():
            fired.append(1)

        timer = PeriodicTimer(0.01, tick)
        timer.start()
        await asyncio.sleep(0.05)
        await timer.cancel()

        assert len(fired) >= 2

    @pytest.mark.asyncio
    async def test_never_fires_after_cancel(self):
        fired = []

        async def tick():
            fired.append(1)

        timer = PeriodicTimer(0.01, tick)
        timer.start()
        await timer.cancel()
        count = len(fired)
        await asyncio.sleep(0.03)

        assert len(fired) == count
        assert not timer.active

    @pytest.mark.asyncio
    async def test_cannot_restart_after_cancel(self):
        async def tick():
            pass

        timer = PeriodicTimer(0.01, tick)
        await timer.cancel()
        timer.start()

        assert not timer.active

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_stop_timer(self):
        fired = []

        async def tick():
            fired.append(1)
            raise RuntimeError("boom")

        timer = PeriodicTimer(0.01, tick)
        timer.start()
        await asyncio.sleep(0.05)
        await timer.cancel()

        assert len(fired) >= 2

    def test_rejects_non_positive_interval(self):
        async def tick():
            pass

        with pytest.raises(ValueError):
            PeriodicTimer(0, tick)

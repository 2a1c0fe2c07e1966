"""
Tests for the per-host AIMD autothrottle.

A fake clock and a recording sleep make delays observable without waiting.
"""

import pytest
from tests.helpers.crawl import FakeClock
from vortex.config import AutoThrottleConfig
from vortex.downloader.autothrottle import AutoThrottle
from vortex.protocols import FetchStatus

HOST = "example.com"


class RecordingSleep:
    """Advances the fake clock instead of sleeping."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)


@pytest.fixture
def sleeper(clock):
    return RecordingSleep(clock)


@pytest.fixture
def throttle(clock, sleeper):
    config = AutoThrottleConfig(
        start_delay=1.0, min_delay=0.1, max_delay=5.0, target_latency=1.0, increase_step=0.5, decrease_factor=0.5
    )
    return AutoThrottle(config, clock=clock, sleep=sleeper)


@pytest.mark.unit
class TestAutoThrottleControl:
    """Delay adjustments follow additive-increase / multiplicative-decrease."""

    def test_starts_at_start_delay(self, throttle):
        assert throttle.delay(HOST) == 1.0

    def test_server_errors_never_decrease_delay(self, throttle):
        delays = [throttle.record(HOST, FetchStatus.SERVER_ERROR, 0.1) for _ in range(20)]
        assert delays == sorted(delays)
        assert delays[0] == 1.5
        assert delays[-1] == 5.0

    @pytest.mark.parametrize("status", [FetchStatus.TIMEOUT, FetchStatus.NETWORK_ERROR])
    def test_transport_failures_increase(self, throttle, status):
        assert throttle.record(HOST, status, 0.0) == 1.5

    def test_fast_successes_never_increase_delay(self, throttle):
        delays = [throttle.record(HOST, FetchStatus.OK, 0.05) for _ in range(10)]
        assert delays == sorted(delays, reverse=True)
        assert delays[0] == 0.5
        assert delays[-1] == 0.1

    def test_slow_success_increases(self, throttle):
        assert throttle.record(HOST, FetchStatus.OK, 2.5) == 1.5

    def test_client_error_leaves_delay_unchanged(self, throttle):
        assert throttle.record(HOST, FetchStatus.CLIENT_ERROR, 0.05, http_status=404) == 1.0

    def test_rate_limited_counts_as_congestion(self, throttle):
        assert throttle.record(HOST, FetchStatus.CLIENT_ERROR, 0.05, http_status=429) == 1.5

    def test_no_decrease_while_error_rate_high(self, throttle):
        throttle.record(HOST, FetchStatus.SERVER_ERROR, 0.1)
        after_error = throttle.delay(HOST)
        # Smoothed error rate is still above target after one success.
        assert throttle.record(HOST, FetchStatus.OK, 0.05) == after_error

    def test_hosts_are_independent(self, throttle):
        throttle.record("slow.test", FetchStatus.SERVER_ERROR, 0.1)
        assert throttle.delay("slow.test") == 1.5
        assert throttle.delay("fast.test") == 1.0

    def test_stats(self, throttle):
        throttle.record(HOST, FetchStatus.OK, 0.2)
        stats = throttle.get_stats()[HOST]
        assert stats["avg_latency"] == pytest.approx(0.2)
        assert stats["error_rate"] == 0.0
        assert stats["delay"] == 0.5


@pytest.mark.unit
class TestAutoThrottleBounds:
    """Floors, ceilings and server hints."""

    def test_floor_raises_lower_bound(self, throttle):
        throttle.set_floor(HOST, 2.0)
        assert throttle.delay(HOST) == 2.0
        for _ in range(5):
            throttle.record(HOST, FetchStatus.OK, 0.05)
        assert throttle.delay(HOST) == 2.0

    def test_floor_capped_at_max_delay(self, throttle):
        throttle.set_floor(HOST, 100.0)
        assert throttle.delay(HOST) == 5.0

    def test_start_delay_clamped(self, clock):
        throttle = AutoThrottle(AutoThrottleConfig(start_delay=10.0, max_delay=2.0), clock=clock)
        assert throttle.delay(HOST) == 2.0

    def test_min_above_max_rejected(self):
        with pytest.raises(ValueError):
            AutoThrottleConfig(min_delay=5.0, max_delay=1.0)


@pytest.mark.unit
class TestAutoThrottleWait:
    """wait() spaces dispatches to one host."""

    @pytest.mark.asyncio
    async def test_first_dispatch_is_immediate(self, throttle, sleeper):
        assert await throttle.wait(HOST) == 0.0
        assert sleeper.calls == []

    @pytest.mark.asyncio
    async def test_consecutive_dispatches_are_spaced(self, throttle, sleeper):
        await throttle.wait(HOST)
        waited = await throttle.wait(HOST)
        assert waited == pytest.approx(1.0)
        assert sleeper.calls == [pytest.approx(1.0)]

    @pytest.mark.asyncio
    async def test_other_hosts_not_delayed(self, throttle, sleeper):
        await throttle.wait("a.test")
        assert await throttle.wait("b.test") == 0.0

    @pytest.mark.asyncio
    async def test_retry_after_is_honoured(self, throttle, clock, sleeper):
        await throttle.wait(HOST)
        throttle.record(HOST, FetchStatus.SERVER_ERROR, 0.1, http_status=503, headers={"retry-after": "4"})
        waited = await throttle.wait(HOST)
        assert waited == pytest.approx(4.0)

    @pytest.mark.asyncio
    async def test_retry_after_date_form_ignored(self, throttle, sleeper):
        await throttle.wait(HOST)
        throttle.record(
            HOST,
            FetchStatus.CLIENT_ERROR,
            0.1,
            http_status=429,
            headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"},
        )
        # Only the AIMD increase applies.
        assert await throttle.wait(HOST) == pytest.approx(1.5)

    @pytest.mark.asyncio
    async def test_disabled_never_waits(self, clock, sleeper):
        throttle = AutoThrottle(AutoThrottleConfig(enabled=False), clock=clock, sleep=sleeper)
        await throttle.wait(HOST)
        assert await throttle.wait(HOST) == 0.0
        assert throttle.record(HOST, FetchStatus.SERVER_ERROR, 0.1) == throttle.config.start_delay
        assert sleeper.calls == []

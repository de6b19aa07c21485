"""
Integration tests for possync/resilience.py

Clocks are injected so state transitions don't depend on sleeping.
"""
import asyncio
import pytest

from possync.exceptions import PosAPIError, PosConnectionError, PosDataError
from possync.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
    RateLimiter,
)


class ManualClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def manual_clock():
    return ManualClock()


def breaker(clock, threshold=3, recovery=60.0):
    return CircuitBreaker(
        config=CircuitBreakerConfig(failure_threshold=threshold, recovery_timeout=recovery),
        clock=clock,
    )


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_starts_closed(self, manual_clock):
        cb = breaker(manual_clock)
        assert cb.state == CircuitState.CLOSED
        assert await cb.can_execute()
        assert not cb.is_open

    @pytest.mark.asyncio
    async def test_success_resets_count(self, manual_clock):
        cb = breaker(manual_clock)
        await cb.record_failure()
        await cb.record_failure()
        await cb.record_success()

        assert cb.failure_count == 0
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, manual_clock):
        cb = breaker(manual_clock, threshold=3)
        for _ in range(3):
            await cb.record_failure()

        assert cb.is_open
        assert not await cb.can_execute()
        assert cb.retry_after == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_half_open_after_recovery(self, manual_clock):
        cb = breaker(manual_clock, threshold=1, recovery=60.0)
        await cb.record_failure()

        manual_clock.now += 59
        assert not await cb.can_execute()

        manual_clock.now += 1
        assert await cb.can_execute()
        assert cb.state == CircuitState.HALF_OPEN
        # only one probe at a time
        assert not await cb.can_execute()

    @pytest.mark.asyncio
    async def test_probe_success_closes(self, manual_clock):
        cb = breaker(manual_clock, threshold=1)
        await cb.record_failure()
        manual_clock.now += 61
        await cb.can_execute()
        await cb.record_success()

        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_probe_failure_reopens(self, manual_clock):
        cb = breaker(manual_clock, threshold=1)
        await cb.record_failure()
        manual_clock.now += 61
        await cb.can_execute()
        await cb.record_failure()

        assert cb.state == CircuitState.OPEN
        assert cb.retry_after == pytest.approx(60.0)


class TestCircuitBreakerCall:

    @pytest.mark.asyncio
    async def test_passes_result_through(self, manual_clock):
        cb = breaker(manual_clock)

        async def fetch(action):
            return {"success": True, "action": action}

        assert await cb.call(fetch, "stock") == {"success": True, "action": "stock"}

    @pytest.mark.asyncio
    async def test_counts_only_listed_exceptions(self, manual_clock):
        cb = breaker(manual_clock, threshold=1)

        async def bad_json():
            raise PosDataError("Invalid JSON response")

        with pytest.raises(PosDataError):
            await cb.call(bad_json, failure_exceptions=(PosAPIError,))
        assert cb.failure_count == 0
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_rejects_when_open(self, manual_clock):
        cb = breaker(manual_clock, threshold=1)
        calls = []

        async def server_error():
            calls.append(1)
            raise PosAPIError("API returned 502", status_code=502)

        with pytest.raises(PosAPIError):
            await cb.call(server_error, failure_exceptions=(PosAPIError,))
        manual_clock.now += 10
        with pytest.raises(CircuitOpenError) as exc:
            await cb.call(server_error, failure_exceptions=(PosAPIError,))

        assert len(calls) == 1
        assert exc.value.retry_after == pytest.approx(50.0)

    @pytest.mark.asyncio
    async def test_probe_with_unlisted_error_frees_slot(self, manual_clock):
        cb = breaker(manual_clock, threshold=1)

        async def unreachable():
            raise PosConnectionError("Connection failed")

        async def maintenance_page():
            raise PosDataError("Invalid JSON response")

        async def ok():
            return {"success": True}

        failures = (PosConnectionError, PosAPIError)
        with pytest.raises(PosConnectionError):
            await cb.call(unreachable, failure_exceptions=failures)
        manual_clock.now += 61
        with pytest.raises(PosDataError):
            await cb.call(maintenance_page, failure_exceptions=failures)

        assert cb.state == CircuitState.HALF_OPEN
        manual_clock.now += 10_000
        assert await cb.call(ok, failure_exceptions=failures) == {"success": True}
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_probe_frees_slot(self, manual_clock):
        cb = breaker(manual_clock, threshold=1)
        await cb.record_failure()
        manual_clock.now += 61

        async def cancelled():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await cb.call(cancelled)

        assert cb.state == CircuitState.HALF_OPEN
        assert await cb.can_execute()

    def test_to_dict(self, manual_clock):
        d = breaker(manual_clock).to_dict()
        assert d == {"state": "closed", "failure_count": 0, "retry_after_seconds": 0.0}


class TestRateLimiter:

    @pytest.mark.asyncio
    async def test_burst_allowed(self):
        limiter = RateLimiter(rate=10.0, burst=5)
        for _ in range(5):
            assert await limiter.acquire(timeout=0.01)

    @pytest.mark.asyncio
    async def test_exhausted_bucket_times_out(self, manual_clock):
        limiter = RateLimiter(rate=1.0, burst=1, clock=manual_clock)
        assert await limiter.acquire(timeout=0.5)
        assert not await limiter.acquire(timeout=0.0)

    @pytest.mark.asyncio
    async def test_refill(self, manual_clock):
        limiter = RateLimiter(rate=5.0, burst=1, clock=manual_clock)
        assert await limiter.acquire(timeout=0.0)

        manual_clock.now += 0.25
        assert await limiter.acquire(timeout=0.0)

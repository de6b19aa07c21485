"""
Guards around the POS backend client.

- CircuitBreaker: after a run of transport failures, calls are rejected
  locally until the recovery timeout passes, so a long outage skips sync
  units quickly instead of waiting on every request.
- RateLimiter: token bucket that spaces consecutive requests.

Nothing here retries. A failed sync unit is skipped and picked up again by
the next pass.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Tuple, Type

from possync.observability import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]


class CircuitState(Enum):
    CLOSED = "closed"        # requests pass
    OPEN = "open"            # requests rejected until recovery_timeout
    HALF_OPEN = "half_open"  # a probe request decides


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5      # consecutive failures that open the circuit
    recovery_timeout: float = 60.0  # seconds open before a probe is allowed
    half_open_requests: int = 1


class CircuitOpenError(Exception):
    """The circuit is open; ``retry_after`` is the remaining wait in seconds."""

    def __init__(self, message: str = "Circuit breaker is open, request rejected", retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    The clock is injectable (seconds, monotonic) so tests can move time
    without sleeping.
    """

    def __init__(self, config: CircuitBreakerConfig = None, clock: Clock = time.monotonic):
        self.config = config or CircuitBreakerConfig()
        self.clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self._opened_at = 0.0
        self._probes = 0
        self._lock = asyncio.Lock()

    def _move_to(self, state: CircuitState) -> None:
        if state == self.state:
            return
        logger.log(
            logging.WARNING if state == CircuitState.OPEN else logging.INFO,
            f"Circuit {self.state.value} -> {state.value}",
            extra={"failure_count": self.failure_count},
        )
        self.state = state
        if state == CircuitState.OPEN:
            self._opened_at = self.clock()
        elif state == CircuitState.HALF_OPEN:
            self._probes = 0

    def _recovery_elapsed(self) -> bool:
        return self.clock() - self._opened_at >= self.config.recovery_timeout

    async def can_execute(self) -> bool:
        """Whether a request may go out now. Counts half-open probes."""
        async with self._lock:
            if self.state == CircuitState.OPEN and self._recovery_elapsed():
                self._move_to(CircuitState.HALF_OPEN)
            if self.state == CircuitState.CLOSED:
                return True
            if self.state == CircuitState.HALF_OPEN and self._probes < self.config.half_open_requests:
                self._probes += 1
                return True
            return False

    async def record_success(self) -> None:
        async with self._lock:
            self.failure_count = 0
            self._move_to(CircuitState.CLOSED)

    def release_probe(self) -> None:
        """Hand back a half-open probe slot whose call ended without a verdict."""
        if self.state == CircuitState.HALF_OPEN and self._probes > 0:
            self._probes -= 1

    async def record_failure(self) -> None:
        async with self._lock:
            self.failure_count += 1
            # a failed probe reopens immediately
            if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.config.failure_threshold:
                self._move_to(CircuitState.OPEN)

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def retry_after(self) -> float:
        if self.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.recovery_timeout - (self.clock() - self._opened_at))

    async def call(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        failure_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
        **kwargs,
    ) -> Any:
        """
        Await ``func(*args, **kwargs)`` through the breaker.

        Only ``failure_exceptions`` count as failures; other exceptions
        (cancellation included) propagate without touching the count and
        free the half-open probe slot for the next call.

        Raises:
            CircuitOpenError: If the circuit rejects the call
        """
        if not await self.can_execute():
            raise CircuitOpenError(retry_after=self.retry_after)
        try:
            result = await func(*args, **kwargs)
        except failure_exceptions:
            await self.record_failure()
            raise
        except BaseException:
            self.release_probe()
            raise
        await self.record_success()
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "retry_after_seconds": round(self.retry_after, 1),
        }


class RateLimiter:
    """
    Token bucket: ``rate`` tokens per second, at most ``burst`` stored.

    With ``burst=1`` consecutive requests are at least ``1 / rate``
    seconds apart.
    """

    def __init__(self, rate: float = 5.0, burst: int = 1, clock: Clock = time.monotonic):
        self.rate = rate
        self.burst = burst
        self.clock = clock
        self._tokens = float(burst)
        self._refilled_at = clock()
        self._lock = asyncio.Lock()

    def _take(self) -> float:
        """Take a token if one is available; otherwise return the wait for the next one."""
        now = self.clock()
        self._tokens = min(float(self.burst), self._tokens + (now - self._refilled_at) * self.rate)
        self._refilled_at = now
        if self._tokens >= 1:
            self._tokens -= 1
            return 0.0
        return (1 - self._tokens) / self.rate

    async def acquire(self, timeout: float = 10.0) -> bool:
        """Wait for a token. Returns False if none is available within ``timeout`` seconds."""
        deadline = self.clock() + timeout
        while True:
            async with self._lock:
                wait = self._take()
            if wait == 0.0:
                return True
            if self.clock() >= deadline:
                return False
            await asyncio.sleep(min(wait, 0.1))

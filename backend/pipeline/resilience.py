"""
Resilience Primitives
=====================
Retry-with-backoff and circuit breaker shared by every outbound API client.

- RetryPolicy: attempts, base delay, backoff factor and a retry predicate
- retry_with_backoff: exponential backoff with up to 10% jitter
- CircuitBreaker: CLOSED → OPEN → HALF_OPEN, one breaker per dependency

Clients compose them as ``breaker.call(lambda: retry_with_backoff(send, policy))``
so one logical call counts as a single breaker failure however many times it
was retried.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx
import structlog

from pipeline.errors import BreakerOpenError, RemoteError, TransientRemoteError
from schemas.metrics import CircuitBreakerState

T = TypeVar("T")

logger = structlog.get_logger(component="retry")


# =============================================================================
# RETRY POLICY
# =============================================================================

NETWORK_ERRORS = (
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.TimeoutException,
    httpx.RemoteProtocolError,
)

RETRYABLE_STATUS = {401, 408, 429}


def default_should_retry(error: Exception, attempt: int) -> bool:
    """Retry 5xx, 401/408/429 and network failures."""
    if isinstance(error, BreakerOpenError):
        return False

    if isinstance(error, RemoteError):
        status = error.status_code
        if status is not None:
            return status >= 500 or status in RETRYABLE_STATUS
        return isinstance(error, TransientRemoteError)

    return isinstance(error, NETWORK_ERRORS)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    backoff_factor: float = 2.0
    should_retry: Callable[[Exception, int], bool] = field(
        default=default_should_retry, compare=False
    )

    def delay_for(self, attempt: int, jitter: float = 0.0) -> float:
        """Delay before attempt + 1. ``jitter`` is a fraction in [0, 1)."""
        base = self.base_delay * (self.backoff_factor ** (attempt - 1))
        return base * (1 + 0.1 * jitter)


RETRY_CONFIGS: Dict[str, RetryPolicy] = {
    # Webhook replays and pushes that must land
    "critical": RetryPolicy(max_attempts=5, base_delay=2.0, backoff_factor=2.0),
    "standard": RetryPolicy(max_attempts=3, base_delay=1.0, backoff_factor=2.0),
    # Health checks and connection tests
    "quick": RetryPolicy(max_attempts=2, base_delay=0.5, backoff_factor=1.5),
    "read_only": RetryPolicy(max_attempts=4, base_delay=1.0, backoff_factor=1.5),
}


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
    operation: str = "request",
) -> T:
    """
    Call ``fn`` until it succeeds, the policy declines, or attempts run out.

    Args:
        fn: Zero-argument coroutine factory, invoked once per attempt
        policy: Retry policy (defaults to the standard preset)
        sleep: Awaitable sleep, injectable for tests
        rng: Jitter source returning a float in [0, 1)
        operation: Label for log lines

    Returns:
        Whatever ``fn`` returns on the successful attempt

    Raises:
        The last error raised by ``fn``
    """
    policy = policy or RETRY_CONFIGS["standard"]
    attempt = 1

    while True:
        try:
            result = await fn()
        except Exception as e:
            if attempt >= policy.max_attempts or not policy.should_retry(e, attempt):
                raise

            delay = policy.delay_for(attempt, rng())
            logger.warning(
                "retry_scheduled",
                operation=operation,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_seconds=round(delay, 3),
                error=str(e),
            )
            await sleep(delay)
            attempt += 1
            continue

        if attempt > 1:
            logger.info("retry_succeeded", operation=operation, attempts=attempt)
        return result


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitState(str, Enum):
    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Failing, reject requests
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


class CircuitBreaker:
    """Circuit breaker guarding one downstream dependency"""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout

        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._last_failure_at: Optional[float] = None
        self._last_failure_time: Optional[datetime] = None
        self._trial_in_flight = False
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="circuit_breaker", name=name)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    async def can_execute(self) -> bool:
        """Check if circuit allows execution"""
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._last_failure_at is not None:
                    elapsed = self._clock() - self._last_failure_at
                    if elapsed > self.reset_timeout:
                        self._state = CircuitState.HALF_OPEN
                        self._failures = 0
                        self._trial_in_flight = True
                        self._logger.info("circuit_half_open", elapsed=round(elapsed, 3))
                        return True
                return False

            # HALF_OPEN: only the trial call passes
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    async def record_success(self):
        """Record successful execution"""
        async with self._lock:
            self._successes += 1
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self._failures = 0
                self._trial_in_flight = False
                self._logger.info("circuit_closed")
            elif self._state == CircuitState.CLOSED:
                self._failures = 0

    async def record_failure(self, error: Optional[Exception] = None):
        """Record failed execution"""
        async with self._lock:
            self._failures += 1
            self._last_failure_at = self._clock()
            self._last_failure_time = datetime.utcnow()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._trial_in_flight = False
                self._logger.warning("circuit_reopened", error=str(error))
            elif self._failures >= self.failure_threshold and self._state != CircuitState.OPEN:
                self._state = CircuitState.OPEN
                self._logger.warning("circuit_opened", failures=self._failures, error=str(error))

    def _retry_after(self) -> Optional[float]:
        if self._last_failure_at is None:
            return None
        return max(0.0, self.reset_timeout - (self._clock() - self._last_failure_at))

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` through the breaker, raising BreakerOpenError when blocked."""
        if not await self.can_execute():
            raise BreakerOpenError(self.name, retry_after=self._retry_after())

        try:
            result = await fn()
        except asyncio.CancelledError:
            self._trial_in_flight = False
            raise
        except Exception as e:
            await self.record_failure(e)
            raise

        await self.record_success()
        return result

    def snapshot(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            name=self.name,
            state=self._state.value,
            failure_count=self._failures,
            success_count=self._successes,
            last_failure_time=self._last_failure_time,
        )

    def reset(self):
        """Force CLOSED and clear counters."""
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._last_failure_at = None
        self._last_failure_time = None
        self._trial_in_flight = False
        self._logger.info("circuit_reset")


__all__ = [
    "RetryPolicy",
    "RETRY_CONFIGS",
    "default_should_retry",
    "retry_with_backoff",
    "CircuitState",
    "CircuitBreaker",
]

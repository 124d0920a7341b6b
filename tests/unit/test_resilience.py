import asyncio

import httpx
import pytest

from pipeline.errors import (
    AuthenticationError,
    BreakerOpenError,
    PermanentRemoteError,
    TransientRemoteError,
)
from pipeline.resilience import (
    RETRY_CONFIGS,
    CircuitBreaker,
    CircuitState,
    RetryPolicy,
    default_should_retry,
    retry_with_backoff,
)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class Recorder:
    """Collects requested sleep durations without sleeping."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def _transient(status=503):
    return TransientRemoteError("boom", service="test", status_code=status)


def _failing_then(result, failures, error_factory=_transient):
    calls = {"n": 0}

    async def fn():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise error_factory()
        return result

    return fn, calls


class TestRetryPolicy:
    def test_delay_grows_exponentially(self):
        policy = RetryPolicy(max_attempts=4, base_delay=1.0, backoff_factor=2.0)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_jitter_is_at_most_ten_percent(self):
        policy = RetryPolicy(base_delay=2.0)
        assert policy.delay_for(1, 0.0) == 2.0
        assert 2.0 <= policy.delay_for(1, 0.999) < 2.2

    def test_presets(self):
        assert RETRY_CONFIGS["critical"].max_attempts == 5
        assert RETRY_CONFIGS["standard"].base_delay == 1.0
        assert RETRY_CONFIGS["quick"].backoff_factor == 1.5
        assert RETRY_CONFIGS["read_only"].max_attempts == 4

    @pytest.mark.parametrize("error, expected", [
        (_transient(500), True),
        (_transient(429), True),
        (TransientRemoteError("network", service="test"), True),
        (AuthenticationError("expired", service="test", status_code=401), True),
        (PermanentRemoteError("bad", service="test", status_code=400), False),
        (PermanentRemoteError("missing", service="test", status_code=404), False),
        (BreakerOpenError("test"), False),
        (httpx.ConnectError("refused"), True),
        (httpx.ReadTimeout("slow"), True),
        (ValueError("bug"), False),
    ])
    def test_default_predicate(self, error, expected):
        assert default_should_retry(error, 1) is expected

    def test_predicate_takes_error_and_attempt(self):
        assert default_should_retry(_transient(), 3) is True


class TestRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self):
        fn, calls = _failing_then("ok", failures=2)
        sleep = Recorder()
        policy = RetryPolicy(max_attempts=3, base_delay=1.0, backoff_factor=2.0)

        result = await retry_with_backoff(fn, policy, sleep=sleep, rng=lambda: 0.0)

        assert result == "ok"
        assert calls["n"] == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        fn, calls = _failing_then("never", failures=10)
        sleep = Recorder()

        with pytest.raises(TransientRemoteError):
            await retry_with_backoff(fn, RetryPolicy(max_attempts=3), sleep=sleep, rng=lambda: 0.0)

        assert calls["n"] == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_permanent_errors_are_not_retried(self):
        fn, calls = _failing_then(
            "never", failures=1,
            error_factory=lambda: PermanentRemoteError("nope", service="test", status_code=422),
        )
        sleep = Recorder()

        with pytest.raises(PermanentRemoteError):
            await retry_with_backoff(fn, RetryPolicy(max_attempts=5), sleep=sleep)

        assert calls["n"] == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_custom_predicate(self):
        fn, calls = _failing_then("ok", failures=1, error_factory=lambda: ValueError("flaky"))
        policy = RetryPolicy(max_attempts=2, base_delay=0.0, should_retry=lambda e, attempt: isinstance(e, ValueError))

        assert await retry_with_backoff(fn, policy, sleep=Recorder()) == "ok"
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_permissive_predicate_still_stops_at_max_attempts(self):
        fn, calls = _failing_then("never", failures=10, error_factory=lambda: ValueError("flaky"))
        seen = []

        def always(error, attempt):
            seen.append(attempt)
            return True

        policy = RetryPolicy(max_attempts=3, base_delay=0.0, should_retry=always)

        with pytest.raises(ValueError):
            await retry_with_backoff(fn, policy, sleep=Recorder())

        assert calls["n"] == 3
        assert seen == [1, 2]


async def _boom():
    raise _transient()


async def _ok():
    return "ok"


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        breaker = CircuitBreaker("tw", failure_threshold=3, reset_timeout=30.0, clock=FakeClock())

        for _ in range(3):
            with pytest.raises(TransientRemoteError):
                await breaker.call(_boom)

        assert breaker.state == CircuitState.OPEN
        assert breaker.failure_count == 3

    @pytest.mark.asyncio
    async def test_open_breaker_blocks_without_calling(self):
        clock = FakeClock()
        breaker = CircuitBreaker("tw", failure_threshold=1, reset_timeout=30.0, clock=clock)
        with pytest.raises(TransientRemoteError):
            await breaker.call(_boom)

        invoked = []

        async def fn():
            invoked.append(True)

        clock.advance(10)
        with pytest.raises(BreakerOpenError) as exc_info:
            await breaker.call(fn)

        assert invoked == []
        assert exc_info.value.breaker_name == "tw"
        assert exc_info.value.retry_after == pytest.approx(20.0)

    @pytest.mark.asyncio
    async def test_still_open_exactly_at_timeout(self):
        clock = FakeClock()
        breaker = CircuitBreaker("tw", failure_threshold=1, reset_timeout=30.0, clock=clock)
        with pytest.raises(TransientRemoteError):
            await breaker.call(_boom)

        clock.advance(30.0)
        assert await breaker.can_execute() is False

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self):
        clock = FakeClock()
        breaker = CircuitBreaker("tw", failure_threshold=2, reset_timeout=30.0, clock=clock)
        for _ in range(2):
            with pytest.raises(TransientRemoteError):
                await breaker.call(_boom)

        clock.advance(31)
        assert await breaker.call(_ok) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("tw", failure_threshold=1, reset_timeout=30.0, clock=clock)
        with pytest.raises(TransientRemoteError):
            await breaker.call(_boom)

        clock.advance(31)
        with pytest.raises(TransientRemoteError):
            await breaker.call(_boom)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(BreakerOpenError):
            await breaker.call(_ok)

    @pytest.mark.asyncio
    async def test_half_open_admits_single_trial(self):
        clock = FakeClock()
        breaker = CircuitBreaker("tw", failure_threshold=1, reset_timeout=30.0, clock=clock)
        with pytest.raises(TransientRemoteError):
            await breaker.call(_boom)
        clock.advance(31)

        release = asyncio.Event()

        async def slow_trial():
            await release.wait()
            return "trial"

        trial = asyncio.create_task(breaker.call(slow_trial))
        await asyncio.sleep(0)
        assert breaker.state == CircuitState.HALF_OPEN

        with pytest.raises(BreakerOpenError):
            await breaker.call(_ok)

        release.set()
        assert await trial == "trial"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_success_in_closed_resets_failures(self):
        breaker = CircuitBreaker("sr", failure_threshold=5, clock=FakeClock())
        with pytest.raises(TransientRemoteError):
            await breaker.call(_boom)
        await breaker.call(_ok)

        assert breaker.failure_count == 0
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_snapshot_and_reset(self):
        breaker = CircuitBreaker("sr", failure_threshold=1, clock=FakeClock())
        await breaker.call(_ok)
        with pytest.raises(TransientRemoteError):
            await breaker.call(_boom)

        snap = breaker.snapshot()
        assert snap.name == "sr"
        assert snap.state == "OPEN"
        assert snap.failure_count == 1
        assert snap.success_count == 1
        assert snap.last_failure_time is not None

        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.snapshot().failure_count == 0

"""Tests for retry, circuit breaker, cooldown table and call window."""

import asyncio

import httpx
import pytest
from web3.exceptions import ContractLogicError

from core.errors import (
    CircuitOpenSkip,
    RateLimitedSkip,
    RejectedOperationError,
    TransientExternalError,
    ValidationError,
    classify_error,
)
from core.models import SkipReason
from core.resilience import CallWindow, CircuitBreaker, RateLimiter, RetryPolicy, retry_async
from tests.conftest import FakeClock, SleepRecorder


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://rpc.example")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"status {code}", request=request, response=response)


class _Flaky:
    """Raises the scripted errors in order, then returns ``result``."""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


# ---------------------------------------------------------------------------
# classify_error
# ---------------------------------------------------------------------------

class TestClassifyError:
    @pytest.mark.parametrize("exc", [
        asyncio.TimeoutError(),
        ConnectionError("reset"),
        RuntimeError("503 Service Unavailable"),
        RuntimeError("getaddrinfo ENOTFOUND rpc"),
        RuntimeError("nonce too low"),
    ])
    def test_transient(self, exc):
        assert isinstance(classify_error(exc), TransientExternalError)

    @pytest.mark.parametrize("exc", [
        RuntimeError("HTTP 502 from upstream"),
        RuntimeError("request failed with status code 429"),
        httpx.ConnectError("connection failed"),
        _status_error(503),
    ])
    def test_transient_status(self, exc):
        assert isinstance(classify_error(exc), TransientExternalError)

    @pytest.mark.parametrize("exc", [
        RuntimeError("execution reverted: not authorized"),
        ValueError("bad argument"),
        ValueError("execution reverted: confidence 500 exceeds max"),
        ValueError("invalid strategy 503"),
        RuntimeError("execution reverted: 0x08c379a0000000000000000000000000000000000429"),
        ContractLogicError("execution reverted: upstream timeout 504"),
        _status_error(400),
    ])
    def test_rejected(self, exc):
        assert isinstance(classify_error(exc), RejectedOperationError)

    def test_passthrough(self):
        err = ValidationError("missing token")
        assert classify_error(err) is err

    def test_skip_reasons(self):
        assert RateLimitedSkip().reason == SkipReason.RATE_LIMITED
        assert CircuitOpenSkip().reason == SkipReason.CIRCUIT_OPEN


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

class TestRetryPolicy:
    def test_delays_double_and_cap(self):
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=10.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]


class TestRetryAsync:
    async def test_first_try(self):
        sleep = SleepRecorder()
        result, attempts = await retry_async(_Flaky([]), RetryPolicy(), sleep=sleep)
        assert (result, attempts) == ("ok", 1)
        assert sleep.delays == []

    async def test_transient_then_success(self):
        sleep = SleepRecorder()
        fn = _Flaky([RuntimeError("network timeout")], result="0xabc")
        result, attempts = await retry_async(fn, RetryPolicy(), sleep=sleep)
        assert result == "0xabc"
        assert attempts == 2
        assert sleep.delays == [1.0]

    async def test_exhausted(self):
        sleep = SleepRecorder()
        fn = _Flaky([ConnectionError("down")] * 5)
        with pytest.raises(TransientExternalError):
            await retry_async(fn, RetryPolicy(max_attempts=3), sleep=sleep)
        assert fn.calls == 3
        assert sleep.delays == [1.0, 2.0]

    async def test_rejection_not_retried(self):
        sleep = SleepRecorder()
        fn = _Flaky([RuntimeError("execution reverted")])
        with pytest.raises(RejectedOperationError):
            await retry_async(fn, RetryPolicy(), sleep=sleep)
        assert fn.calls == 1
        assert sleep.delays == []

    async def test_cancellation_propagates(self):
        fn = _Flaky([asyncio.CancelledError()])
        with pytest.raises(asyncio.CancelledError):
            await retry_async(fn, RetryPolicy(), sleep=SleepRecorder())


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------

class TestCircuitBreaker:
    def test_opens_at_threshold(self):
        clock = FakeClock()
        breaker = CircuitBreaker(threshold=3, reset_timeout=60, clock=clock)
        assert breaker.record_failure() is False
        assert breaker.record_failure() is False
        assert breaker.record_failure() is True
        assert breaker.is_open
        with pytest.raises(CircuitOpenSkip):
            breaker.check()

    def test_auto_reset_after_timeout(self):
        clock = FakeClock()
        breaker = CircuitBreaker(threshold=3, reset_timeout=60, clock=clock)
        for _ in range(3):
            breaker.record_failure()
        clock.advance(59)
        assert breaker.is_open
        clock.advance(1)
        assert not breaker.is_open
        assert breaker.consecutive_failures == 0
        breaker.check()

    def test_success_resets_counter(self):
        breaker = CircuitBreaker(threshold=3, clock=FakeClock())
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert not breaker.is_open
        assert breaker.state().consecutive_failures == 1

    def test_state_snapshot(self):
        clock = FakeClock()
        breaker = CircuitBreaker(threshold=1, reset_timeout=60, clock=clock)
        breaker.record_failure()
        state = breaker.state()
        assert state.is_open is True
        assert state.reset_at == clock.now + 60


# ---------------------------------------------------------------------------
# Cooldown table
# ---------------------------------------------------------------------------

class TestRateLimiter:
    def test_second_acquire_inside_cooldown_skips(self):
        clock = FakeClock()
        limiter = RateLimiter(cooldown=300, clock=clock)
        limiter.acquire("5")
        with pytest.raises(RateLimitedSkip):
            limiter.acquire("5")
        clock.advance(300)
        limiter.acquire("5")

    def test_release(self):
        limiter = RateLimiter(cooldown=300, clock=FakeClock())
        limiter.acquire("5")
        limiter.release("5")
        assert not limiter.is_limited("5")
        limiter.acquire("5")

    def test_prune_drops_expired(self):
        clock = FakeClock()
        limiter = RateLimiter(cooldown=300, clock=clock)
        limiter.acquire("1")
        clock.advance(200)
        limiter.acquire("2")
        clock.advance(100)
        assert limiter.prune() == 1
        assert len(limiter) == 1
        assert limiter.is_limited("2")


# ---------------------------------------------------------------------------
# Call window
# ---------------------------------------------------------------------------

class TestCallWindow:
    def test_limits_calls_per_window(self):
        clock = FakeClock()
        window = CallWindow(max_calls=2, window=60, clock=clock)
        assert window.try_acquire()
        assert window.try_acquire()
        assert not window.try_acquire()
        assert window.in_window == 2
        clock.advance(60)
        assert window.try_acquire()
        assert window.in_window == 1

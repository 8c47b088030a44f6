"""
Resilience primitives: retry with exponential backoff, a cycle-level
circuit breaker, a per-invoice cooldown table, and a rolling call window.

All time-dependent objects take a ``clock`` callable (seconds, monotonic by
default) so tests can drive them deterministically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, NamedTuple, TypeVar

from core.errors import (
    CircuitOpenSkip,
    RateLimitedSkip,
    TransientExternalError,
    classify_error,
)
from core.models import CircuitBreakerState

T = TypeVar("T")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

class RetryPolicy(NamedTuple):
    """Bounded exponential backoff."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Delay after failed *attempt* (1-based): ``min(base·2^(n−1), max)``."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
    log: logging.Logger | logging.LoggerAdapter | None = None,
    context: dict[str, Any] | None = None,
) -> tuple[T, int]:
    """Run *fn* until it succeeds, a non-transient error occurs, or attempts run out.

    Returns ``(result, attempts_used)``.  Raises the classified error of the
    final failure; rejections are raised on the first occurrence.
    """
    log = log or logger
    context = context or {}
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn(), attempt
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            err = classify_error(exc)
            if not isinstance(err, TransientExternalError):
                raise err from exc
            if attempt >= policy.max_attempts:
                log.warning(
                    "Retries exhausted.",
                    extra={**context, "attempt": attempt, "error": str(err)},
                )
                raise err from exc
            delay = policy.delay_for(attempt)
            log.info(
                "Transient failure; retrying.",
                extra={**context, "attempt": attempt, "delay_s": delay, "error": str(err)},
            )
            await sleep(delay)


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------

class CircuitBreaker:
    """Counts consecutive cycle failures and halts cycles while open.

    Opens after ``threshold`` consecutive failures and stays open for
    ``reset_timeout`` seconds; on expiry it closes and the counter resets.
    Any success resets the counter.
    """

    def __init__(
        self,
        threshold: int = 3,
        reset_timeout: float = 60.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._failures = 0
        self._open = False
        self._reset_at: float | None = None

    @property
    def is_open(self) -> bool:
        self._maybe_reset()
        return self._open

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def _maybe_reset(self) -> None:
        if self._open and self._reset_at is not None and self._clock() >= self._reset_at:
            logger.info("Circuit breaker cooldown elapsed; closing.")
            self._open = False
            self._reset_at = None
            self._failures = 0

    def check(self) -> None:
        """Raise :class:`CircuitOpenSkip` while the breaker is open."""
        if self.is_open:
            remaining = max(0.0, (self._reset_at or 0.0) - self._clock())
            raise CircuitOpenSkip(f"circuit open, {remaining:.0f}s until reset")

    def record_failure(self) -> bool:
        """Count a failed cycle. Returns True if this failure opened the breaker."""
        self._maybe_reset()
        self._failures += 1
        if not self._open and self._failures >= self.threshold:
            self._open = True
            self._reset_at = self._clock() + self.reset_timeout
            logger.warning(
                "Circuit breaker OPEN after %d consecutive failures.", self._failures,
            )
            return True
        return False

    def record_success(self) -> None:
        self._failures = 0
        self._open = False
        self._reset_at = None

    def state(self) -> CircuitBreakerState:
        self._maybe_reset()
        return CircuitBreakerState(
            consecutive_failures=self._failures,
            is_open=self._open,
            reset_at=self._reset_at,
        )


# ---------------------------------------------------------------------------
# Per-invoice cooldown
# ---------------------------------------------------------------------------

class RateLimiter:
    """Maps token id → last analysis time; rejects re-analysis inside the cooldown."""

    def __init__(self, cooldown: float = 300.0, clock: Clock = time.monotonic) -> None:
        self.cooldown = cooldown
        self._clock = clock
        self._last: dict[str, float] = {}

    def is_limited(self, token_id: str) -> bool:
        last = self._last.get(token_id)
        return last is not None and self._clock() - last < self.cooldown

    def acquire(self, token_id: str) -> None:
        """Mark *token_id* as analysed now, or raise :class:`RateLimitedSkip`."""
        if self.is_limited(token_id):
            raise RateLimitedSkip(f"invoice {token_id} analysed within cooldown")
        self._last[token_id] = self._clock()

    def release(self, token_id: str) -> None:
        self._last.pop(token_id, None)

    def prune(self) -> int:
        """Drop entries whose cooldown has elapsed. Returns the number removed."""
        now = self._clock()
        stale = [tid for tid, ts in self._last.items() if now - ts >= self.cooldown]
        for tid in stale:
            del self._last[tid]
        return len(stale)

    def __len__(self) -> int:
        return len(self._last)


# ---------------------------------------------------------------------------
# Rolling call window
# ---------------------------------------------------------------------------

class CallWindow:
    """Allows at most ``max_calls`` acquisitions per rolling ``window`` seconds."""

    def __init__(self, max_calls: int, window: float, clock: Clock = time.monotonic) -> None:
        self.max_calls = max_calls
        self.window = window
        self._clock = clock
        self._calls: deque[float] = deque()

    def try_acquire(self) -> bool:
        now = self._clock()
        while self._calls and now - self._calls[0] >= self.window:
            self._calls.popleft()
        if len(self._calls) >= self.max_calls:
            return False
        self._calls.append(now)
        return True

    @property
    def in_window(self) -> int:
        return len(self._calls)

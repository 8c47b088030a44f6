"""
DecisionExecutionPipeline — turns an actionable AnalysisResult into a
``recordDecision`` ledger write.

Guards, in order:

  1. per-invoice cooldown      (``admit``; RateLimitedSkip, silent)
  2. cycle circuit breaker     (CircuitOpenSkip, silent, zero ledger calls)
  3. should-act gate           (not actionable → no-op)
  4. retry with backoff        (transient failures only)

Skips come back as ``ExecutionResult(skipped=...)``; they are never errors.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Protocol

from core import metrics
from core.broadcaster import EventBroadcaster
from core.errors import AgentError, EngineSkip
from core.logger import get_logger
from core.models import AnalysisResult, ExecutionResult, SkipReason, Strategy, ThoughtType
from core.resilience import CircuitBreaker, RateLimiter, RetryPolicy, Sleep, retry_async


class LedgerWriter(Protocol):
    async def record_decision(
        self, token_id: str, strategy: Strategy, confidence: int, reasoning: str,
    ) -> str: ...


class DecisionExecutionPipeline:
    """Executes strategy changes against the ledger."""

    def __init__(
        self,
        ledger: LedgerWriter,
        broadcaster: EventBroadcaster,
        rate_limiter: RateLimiter,
        breaker: CircuitBreaker,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.rate_limiter = rate_limiter
        self.breaker = breaker
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self.log = get_logger("execution_pipeline")
        self._executed = 0
        self._failed = 0

    # -- admission -----------------------------------------------------------

    def admit(self, token_id: str, force: bool = False) -> None:
        """Claim the cooldown slot for *token_id* or raise :class:`RateLimitedSkip`.

        ``force`` bypasses the check but still restarts the cooldown.
        """
        if force:
            self.rate_limiter.release(token_id)
        self.rate_limiter.acquire(token_id)

    def prune(self) -> int:
        removed = self.rate_limiter.prune()
        if removed:
            self.log.debug("Pruned %d stale cooldown entries.", removed)
        return removed

    # -- execution -----------------------------------------------------------

    async def execute(self, token_id: str, analysis: AnalysisResult) -> ExecutionResult:
        try:
            self.breaker.check()
        except EngineSkip as skip:
            self.log.info(
                "Execution skipped.", extra={"token_id": token_id, "skip_reason": skip.reason},
            )
            metrics.executions_total.labels(outcome="skipped").inc()
            return ExecutionResult(success=False, skipped=skip.reason)

        if not analysis.should_act:
            self.log.debug(
                "Nothing to execute.",
                extra={"token_id": token_id, "skip_reason": SkipReason.NOT_ACTIONABLE},
            )
            return ExecutionResult(success=False, skipped=SkipReason.NOT_ACTIONABLE)

        target = analysis.recommended_strategy
        self.broadcaster.thought(
            ThoughtType.EXECUTION,
            f"Executing: Change to {target.display_name} strategy...",
            token_id=token_id,
            strategy=target.display_name,
            confidence=analysis.confidence,
        )

        attempts = 0

        async def _write() -> str:
            nonlocal attempts
            attempts += 1
            return await self.ledger.record_decision(
                token_id, target, analysis.confidence, analysis.reasoning,
            )

        started = time.monotonic()
        try:
            reference, attempts = await retry_async(
                _write,
                self.retry_policy,
                sleep=self._sleep,
                log=self.log,
                context={"token_id": token_id},
            )
        except AgentError as exc:
            self._failed += 1
            metrics.executions_total.labels(outcome="failed").inc()
            self.log.error(
                "Strategy change failed.",
                extra={"token_id": token_id, "attempt": attempts, "error": str(exc)},
            )
            self.broadcaster.execution(token_id, success=False)
            self.broadcaster.error(
                token_id,
                f"Strategy update failed - will retry next cycle: {exc}",
                attempts=attempts,
                error_kind=type(exc).__name__,
            )
            return ExecutionResult(success=False, error=str(exc), attempts=attempts)

        self._executed += 1
        metrics.executions_total.labels(outcome="success").inc()
        self.log.info(
            "Strategy change recorded.",
            extra={
                "token_id": token_id,
                "strategy": target.display_name,
                "confidence": analysis.confidence,
                "attempt": attempts,
                "reference": reference,
                "duration_ms": round((time.monotonic() - started) * 1000, 1),
            },
        )
        self.broadcaster.execution(token_id, success=True, reference=reference)
        return ExecutionResult(success=True, reference=reference, attempts=attempts)

    def health(self) -> dict[str, Any]:
        return {
            "executed": self._executed,
            "failed": self._failed,
            "cooldown_entries": len(self.rate_limiter),
            "breaker": self.breaker.state().model_dump(),
        }

"""
CycleOrchestrator — drives the Faktory decision engine.

Cycle state machine:

  Idle → FetchingMarket → ScanningInvoices → Analyzing → ExecutingSelected → Idle

  FetchingMarket      observe prices, update the regime, derive the alert
  ScanningInvoices    de-duplicated union of active invoices and deposits
  Analyzing           bounded fan-out (``max_concurrent_analyses``); one
                      invoice failing never aborts the others
  ExecutingSelected   actionable + deposited + auto-execute → pipeline;
                      actionable but undeposited → guidance thought only

A tick that fires while a cycle is still running is skipped (and the skip is
broadcast); a demo trigger that lands mid-cycle runs right after it.  While
the circuit breaker is open cycles are skipped silently with zero ledger
calls.  A failure before ExecutingSelected counts against the breaker; a
cycle that completes resets it.

Per-invoice broadcast order: thinking → analysis → decision → execution|error.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Protocol

from pydantic import ValidationError as PydanticValidationError

from agents.base_agent import BaseAgent
from agents.execution.pipeline import DecisionExecutionPipeline
from agents.market.monitor import MarketMonitor
from agents.market.regime import RegimeClassifier
from agents.narrative.explainer import NarrativeExplainer
from agents.strategy.adjustment import adjust
from agents.strategy.optimizer import (
    SECONDS_PER_DAY,
    analyze_invoice,
    calculate_composite_score,
    recognize_pattern,
)
from core import metrics
from core.broadcaster import EventBroadcaster
from core.errors import (
    CircuitOpenSkip,
    EngineSkip,
    TransientExternalError,
    ValidationError,
)
from core.message_bus import MessageBus, STREAM_MARKET_CONDITIONS
from core.models import (
    AgentConfig,
    AlertLevel,
    AnalysisResult,
    CycleState,
    Deposit,
    IdListResult,
    Invoice,
    MarketAlert,
    MarketConditions,
    RegimeAdjustment,
    SkipReason,
    ThoughtType,
)


class LedgerReader(Protocol):
    async def get_invoice(self, token_id: str) -> Invoice | None: ...
    async def get_deposit(self, token_id: str) -> Deposit | None: ...
    async def get_active_invoice_ids(self) -> IdListResult: ...
    async def get_active_deposit_ids(self) -> IdListResult: ...


# Normalised scenario name (lower case, no separators) → canonical scenario.
_DEMO_ALIASES: dict[str, str] = {
    "marketcrash": "market_crash",
    "crash": "market_crash",
    "marketrally": "market_rally",
    "rally": "market_rally",
    "reset": "reset",
}

_CONFIG_KEYS: dict[str, str] = {}
for _name, _field in AgentConfig.model_fields.items():
    _CONFIG_KEYS[_name] = _name
    if _field.alias:
        _CONFIG_KEYS[_field.alias] = _name


class CycleOrchestrator(BaseAgent):
    """Runs analysis cycles on a timer and on demand."""

    def __init__(
        self,
        ledger: LedgerReader,
        monitor: MarketMonitor,
        regime: RegimeClassifier,
        pipeline: DecisionExecutionPipeline,
        broadcaster: EventBroadcaster,
        explainer: NarrativeExplainer,
        config: AgentConfig | None = None,
        bus: MessageBus | None = None,
        crash_pct: float = 10.0,
        rally_pct: float = 8.0,
        bull_upgrade_confidence: int = 80,
        authorization_check: Any = None,
        clock: Any = time.time,
        **kw: Any,
    ) -> None:
        super().__init__(agent_id="cycle_orchestrator", agent_type="meta", bus=bus, **kw)
        self.ledger = ledger
        self.monitor = monitor
        self.regime = regime
        self.pipeline = pipeline
        self.broadcaster = broadcaster
        self.explainer = explainer
        self.config = config or AgentConfig()
        self.crash_pct = crash_pct
        self.rally_pct = rally_pct
        self.bull_upgrade_confidence = bull_upgrade_confidence
        self._authorization_check = authorization_check
        self._clock = clock

        self._cycle_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._cycle_tasks: set[asyncio.Task[Any]] = set()
        self._state = CycleState.IDLE
        self._force_next = False

        self._cycle_count = 0
        self._cycles_skipped = 0
        self._cycles_failed = 0
        self._last_cycle: dict[str, Any] | None = None

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        await self._check_authorization()
        await self.broadcaster.start()
        self.broadcaster.thought(
            ThoughtType.THINKING, "Faktory Agent is now active and monitoring invoices...",
        )
        await super().start()
        self._wake.set()

    async def stop(self) -> None:
        await super().stop()
        for t in list(self._cycle_tasks):
            t.cancel()
        if self._cycle_tasks:
            await asyncio.gather(*self._cycle_tasks, return_exceptions=True)
        self._cycle_tasks.clear()
        await self.broadcaster.stop()

    async def _check_authorization(self) -> None:
        if self._authorization_check is None:
            self.log.warning("No signing key - agent running in read-only mode.")
            return
        try:
            authorized = await self._authorization_check()
        except Exception as exc:
            self.log.warning("Authorization check failed.", extra={"error": str(exc)})
            return
        if authorized:
            self.log.info("Agent is authorized on AgentRouter.")
        else:
            self.log.warning("Agent is NOT authorized on AgentRouter; writes will be rejected.")

    async def process(self) -> None:
        """Fire a cycle every interval, or sooner when woken."""
        interval = self.config.analysis_interval_ms / 1000
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()
        self._spawn_cycle()

    def _spawn_cycle(self) -> asyncio.Task[Any]:
        task = asyncio.create_task(self.run_cycle(), name=f"cycle:{self._cycle_count + 1}")
        self._cycle_tasks.add(task)
        task.add_done_callback(self._cycle_tasks.discard)
        return task

    # -- cycle ---------------------------------------------------------------

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_lock.locked()

    async def run_cycle(self) -> bool:
        """Run one full cycle. Returns True if it completed normally."""
        if self._cycle_lock.locked():
            metrics.cycles_total.labels(outcome="skipped_overlap").inc()
            self._cycles_skipped += 1
            self.log.info(
                "Cycle tick skipped.", extra={"skip_reason": SkipReason.CYCLE_IN_PROGRESS},
            )
            self.broadcaster.thought(
                ThoughtType.SKIP,
                "Previous analysis cycle still in progress - skipping this tick",
                reason=SkipReason.CYCLE_IN_PROGRESS,
            )
            return False

        async with self._cycle_lock:
            try:
                self.pipeline.breaker.check()
            except CircuitOpenSkip as skip:
                metrics.cycles_total.labels(outcome="skipped_circuit").inc()
                metrics.circuit_open.set(1)
                self._cycles_skipped += 1
                self.log.info("Cycle skipped: %s", skip, extra={"skip_reason": skip.reason})
                return False

            self._cycle_count += 1
            cycle_id = self._cycle_count
            force = self._force_next
            self._force_next = False
            started = time.monotonic()
            self.pipeline.prune()

            reached_execution = False
            try:
                self._state = CycleState.FETCHING_MARKET
                conditions, alert, adjustment = await self._fetch_market()

                self._state = CycleState.SCANNING_INVOICES
                self.broadcaster.thought(ThoughtType.THINKING, "Scanning for active invoices...")
                candidates = await self._scan()

                self._state = CycleState.ANALYZING
                if not candidates:
                    self.broadcaster.thought(
                        ThoughtType.THINKING,
                        "No active invoices found. Waiting for new invoices...",
                    )
                    results: list[AnalysisResult] = []
                else:
                    self.broadcaster.thought(
                        ThoughtType.THINKING,
                        f"Found {len(candidates)} invoice(s). Beginning analysis...",
                        count=len(candidates),
                    )
                    results = await self._analyze_all(
                        candidates, conditions, alert, adjustment, force=force,
                    )

                self._state = CycleState.EXECUTING_SELECTED
                reached_execution = True
                executed = await self._execute_selected(results)
            except Exception as exc:
                if reached_execution:
                    self.log.exception("Unexpected error while executing decisions.")
                    self.broadcaster.error("system", f"Execution stage error: {exc}")
                    return False
                self._cycles_failed += 1
                opened = self.pipeline.breaker.record_failure()
                metrics.cycles_total.labels(outcome="failed").inc()
                metrics.circuit_open.set(int(self.pipeline.breaker.is_open))
                self.log.error(
                    "Cycle failed.", extra={"cycle_id": cycle_id, "error": str(exc)},
                )
                self.broadcaster.error(
                    "system", f"Analysis cycle error: {exc}",
                    cycle_id=cycle_id, breaker_open=opened,
                )
                return False
            finally:
                self._state = CycleState.IDLE
                # A demo triggered mid-cycle runs as soon as this one ends.
                if self._force_next and self._running:
                    self._wake.set()

            self.pipeline.breaker.record_success()
            metrics.cycles_total.labels(outcome="completed").inc()
            metrics.circuit_open.set(0)
            duration_ms = round((time.monotonic() - started) * 1000, 1)
            self._last_cycle = {
                "cycle_id": cycle_id,
                "candidates": len(candidates),
                "analyzed": len(results),
                "executed": executed,
                "duration_ms": duration_ms,
                "finished_at": self._clock(),
            }
            self.log.info(
                "Cycle complete: %d candidates, %d analysed, %d executed.",
                len(candidates), len(results), executed,
                extra={"cycle_id": cycle_id, "duration_ms": duration_ms},
            )
            self.broadcaster.thought(
                ThoughtType.THINKING,
                f"Analysis cycle complete. Next scan in "
                f"{self.config.analysis_interval_ms // 1000}s",
                cycle_id=cycle_id,
            )
            return True

    async def _fetch_market(self) -> tuple[MarketConditions, MarketAlert | None, RegimeAdjustment]:
        previous = self.regime.current_regime()
        observed = await self.monitor.observe()
        # Concurrent analyses read a snapshot, never the live object.
        conditions = observed.model_copy()
        current = self.regime.update_regime(conditions)
        adjustment = self.regime.adjustment()
        metrics.market_price_change.set(conditions.eth_price_change_24h)
        alert = self.monitor.current_alert()

        if current != previous:
            self.broadcaster.thought(
                ThoughtType.THINKING,
                f"Market regime changed: {previous.upper()} → {current.upper()}. "
                f"{adjustment.description}",
                regime=current,
                previous_regime=previous,
            )
        if alert is not None:
            self.broadcaster.thought(
                ThoughtType.THINKING,
                f"Market alert ({alert.level}): {alert.message}. {alert.recommendation}",
                level=alert.level,
                price_change=alert.price_change,
            )
        await self.publish(STREAM_MARKET_CONDITIONS, conditions)
        return conditions, alert, adjustment

    async def _scan(self) -> list[str]:
        invoices, deposits = await asyncio.gather(
            self.ledger.get_active_invoice_ids(),
            self.ledger.get_active_deposit_ids(),
        )
        if not invoices.ok and not deposits.ok:
            raise TransientExternalError(
                f"ledger unavailable (invoices: {invoices.error}; deposits: {deposits.error})"
            )
        if not invoices.ok:
            self.broadcaster.error("system", f"Failed to list active invoices: {invoices.error}")
        if not deposits.ok:
            self.broadcaster.error("system", f"Failed to list active deposits: {deposits.error}")
        # Stable-order union.
        return list(dict.fromkeys([*invoices.ids, *deposits.ids]))

    async def _analyze_all(
        self,
        candidates: list[str],
        conditions: MarketConditions,
        alert: MarketAlert | None,
        adjustment: RegimeAdjustment,
        force: bool = False,
    ) -> list[AnalysisResult]:
        sem = asyncio.Semaphore(self.config.max_concurrent_analyses)

        async def _bounded(token_id: str) -> AnalysisResult | None:
            async with sem:
                return await self._analyze_guarded(token_id, conditions, alert, adjustment, force)

        outcomes = await asyncio.gather(
            *(_bounded(tid) for tid in candidates), return_exceptions=True,
        )
        results: list[AnalysisResult] = []
        for token_id, outcome in zip(candidates, outcomes):
            if isinstance(outcome, AnalysisResult):
                results.append(outcome)
            elif isinstance(outcome, BaseException):
                self.log.error(
                    "Analysis task crashed.", extra={"token_id": token_id, "error": str(outcome)},
                )
        return results

    async def _analyze_guarded(
        self,
        token_id: str,
        conditions: MarketConditions,
        alert: MarketAlert | None,
        adjustment: RegimeAdjustment,
        force: bool = False,
    ) -> AnalysisResult | None:
        """Analyse one invoice. Skips return None silently; failures are broadcast."""
        try:
            self.pipeline.admit(token_id, force=force)
        except EngineSkip as skip:
            metrics.analyses_total.labels(outcome="skipped").inc()
            self.log.debug("Analysis skipped.", extra={"token_id": token_id, "skip_reason": skip.reason})
            return None

        try:
            result = await self._analyze(token_id, conditions, alert, adjustment)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            metrics.analyses_total.labels(outcome="failed").inc()
            self.pipeline.rate_limiter.release(token_id)
            self.log.error("Analysis failed.", extra={"token_id": token_id, "error": str(exc)})
            self.broadcaster.error(token_id, f"Analysis failed: {exc}")
            return None
        if result is None:
            metrics.analyses_total.labels(outcome="not_found").inc()
            self.pipeline.rate_limiter.release(token_id)
            return None
        metrics.analyses_total.labels(outcome="completed").inc()
        return result

    async def _analyze(
        self,
        token_id: str,
        conditions: MarketConditions,
        alert: MarketAlert | None,
        adjustment: RegimeAdjustment,
    ) -> AnalysisResult | None:
        invoice, deposit = await asyncio.gather(
            self.ledger.get_invoice(token_id),
            self.ledger.get_deposit(token_id),
        )
        if invoice is None:
            self.broadcaster.error(token_id, f"Invoice #{token_id} not found")
            return None

        self.broadcaster.thought(
            ThoughtType.THINKING, f"Analyzing Invoice #{token_id[:8]}...",
            token_id=token_id, step=1, total=4,
        )

        now = int(self._clock())
        base = analyze_invoice(invoice, deposit, now, self.config.min_confidence)
        analysis = adjust(
            base, conditions, alert, adjustment,
            min_confidence=self.config.min_confidence,
            bull_upgrade_confidence=self.bull_upgrade_confidence,
        )

        deposit_days = (now - deposit.deposit_time) / SECONDS_PER_DAY if deposit else 0.0
        composite, breakdown, insights = calculate_composite_score(
            analysis.risk_score, analysis.payment_probability, analysis.days_until_due,
            conditions.volatility_level, deposit_days,
        )
        pattern, pattern_conf, pattern_note = recognize_pattern(
            analysis.risk_score, analysis.days_until_due, conditions.volatility_level,
        )
        self.broadcaster.thought(
            ThoughtType.ANALYSIS,
            f"Risk Score: {analysis.risk_score}/100 | "
            f"Payment Probability: {analysis.payment_probability}%",
            token_id=token_id,
            risk_score=analysis.risk_score,
            payment_probability=analysis.payment_probability,
            days_until_due=analysis.days_until_due,
            composite_score=composite,
            score_breakdown=breakdown,
            insights=insights,
            pattern=pattern,
            pattern_confidence=pattern_conf,
            pattern_recommendation=pattern_note,
        )

        self.broadcaster.thought(
            ThoughtType.ANALYSIS,
            f"Evaluating: {analysis.current_strategy.display_name} → "
            f"{analysis.recommended_strategy.display_name} ({analysis.confidence}% confidence)",
            token_id=token_id,
            current_strategy=analysis.current_strategy.display_name,
            recommended_strategy=analysis.recommended_strategy.display_name,
            confidence=analysis.confidence,
            should_act=analysis.should_act,
            market_override=analysis.market_override,
            pre_override_strategy=(
                analysis.pre_override_strategy.display_name
                if analysis.pre_override_strategy is not None else None
            ),
            regime=adjustment.regime,
        )

        explanation = await self.explainer.explain(analysis)
        self.broadcaster.thought(
            ThoughtType.DECISION, explanation,
            token_id=token_id,
            should_act=analysis.should_act,
            strategy=int(analysis.recommended_strategy),
            reasoning=analysis.reasoning,
            adjustments=analysis.adjustments,
        )
        return analysis

    async def _execute_selected(self, results: list[AnalysisResult]) -> int:
        executed = 0
        for analysis in results:
            try:
                if await self._execute_one(analysis):
                    executed += 1
            except Exception as exc:
                self.log.error(
                    "Execution failed.", extra={"token_id": analysis.token_id, "error": str(exc)},
                )
                self.broadcaster.error(analysis.token_id, f"Execution failed: {exc}")
        return executed

    async def _execute_one(self, analysis: AnalysisResult) -> bool:
        if not analysis.should_act:
            return False
        if not analysis.is_deposited:
            target = analysis.recommended_strategy
            self.broadcaster.thought(
                ThoughtType.DECISION,
                f"Invoice #{analysis.token_id} is not deposited yet. Suggested strategy on "
                f"deposit: {target.display_name} ({target.apy_pct:.1f}% APY).",
                token_id=analysis.token_id,
                guidance=True,
                strategy=int(target),
            )
            return False
        if not self.config.auto_execute:
            self.log.info(
                "Auto-execute disabled; decision not executed.",
                extra={"token_id": analysis.token_id},
            )
            return False
        result = await self.pipeline.execute(analysis.token_id, analysis)
        return result.success

    # -- on-demand triggers --------------------------------------------------

    async def analyze(self, token_id: str, force: bool = False) -> AnalysisResult | None:
        """Manually analyse (and possibly execute) a single invoice.

        Returns None when the invoice was skipped or could not be analysed.
        """
        token_id = str(token_id).strip() if token_id is not None else ""
        if not token_id or not token_id.isdigit():
            raise ValidationError(f"invalid token id: {token_id!r}")

        if self.pipeline.breaker.is_open:
            self.log.info(
                "Manual analysis skipped.",
                extra={"token_id": token_id, "skip_reason": SkipReason.CIRCUIT_OPEN},
            )
            return None

        conditions = self.monitor.conditions.model_copy()
        alert = self.monitor.current_alert()
        adjustment = self.regime.adjustment()
        analysis = await self._analyze_guarded(token_id, conditions, alert, adjustment, force)
        if analysis is not None:
            try:
                await self._execute_one(analysis)
            except Exception as exc:
                self.log.error("Execution failed.", extra={"token_id": token_id, "error": str(exc)})
                self.broadcaster.error(token_id, f"Execution failed: {exc}")
        return analysis

    async def trigger_demo(self, scenario: str) -> MarketConditions:
        """Inject a demo market scenario and force a cycle now, or right after the running one."""
        key = _DEMO_ALIASES.get(scenario.replace("-", "").replace("_", "").lower())
        if key is None:
            raise ValidationError(f"unknown demo scenario: {scenario!r}")

        if key == "market_crash":
            conditions = self.monitor.simulate_shock(self.crash_pct)
            message = f"Demo: simulating market crash (-{self.crash_pct:g}%)"
        elif key == "market_rally":
            conditions = self.monitor.simulate_shock(-self.rally_pct)
            message = f"Demo: simulating market rally (+{self.rally_pct:g}%)"
        else:
            conditions = self.monitor.reset()
            message = "Demo: market conditions reset"

        self.broadcaster.thought(ThoughtType.THINKING, message, scenario=key)
        self._force_next = True
        if self.cycle_in_progress:
            return conditions
        if self._running:
            self._wake.set()
        else:
            await self.run_cycle()
        return conditions

    def update_config(self, **options: Any) -> AgentConfig:
        """Apply runtime configuration. Accepts snake_case names or camelCase aliases."""
        unknown = [k for k in options if k not in _CONFIG_KEYS]
        if unknown:
            raise ValidationError(f"unknown config option(s): {', '.join(sorted(unknown))}")
        merged = self.config.model_dump()
        merged.update({_CONFIG_KEYS[k]: v for k, v in options.items()})
        try:
            new = AgentConfig.model_validate(merged)
        except PydanticValidationError as exc:
            raise ValidationError(str(exc)) from exc
        self.config = new
        self.log.info("Configuration updated: %s", new.model_dump(by_alias=True))
        # Let a changed interval take effect right away.
        if self._running and "analysis_interval_ms" in {_CONFIG_KEYS[k] for k in options}:
            self._wake.set()
        return new

    # -- introspection -------------------------------------------------------

    def status(self) -> dict[str, Any]:
        alert = self.monitor.current_alert()
        breaker = self.pipeline.breaker.state()
        metrics.circuit_open.set(int(breaker.is_open))
        return {
            "running": self._running,
            "state": self._state,
            "cycle_in_progress": self.cycle_in_progress,
            "cycles": self._cycle_count,
            "last_cycle": self._last_cycle,
            "config": self.config.model_dump(by_alias=True),
            "circuit_breaker": breaker.model_dump(),
            "regime": self.regime.stats().model_dump(mode="json"),
            "market": self.monitor.conditions.model_dump(mode="json"),
            "alert": alert.model_dump(mode="json") if alert else None,
            "connected_clients": self.broadcaster.client_count,
        }

    def health(self) -> dict[str, Any]:
        alert = self.monitor.current_alert()
        metrics.circuit_open.set(int(self.pipeline.breaker.is_open))
        base = super().health()
        base.update({
            "state": self._state,
            "cycles": self._cycle_count,
            "cycles_skipped": self._cycles_skipped,
            "cycles_failed": self._cycles_failed,
            "pipeline": self.pipeline.health(),
            "broadcaster": self.broadcaster.health(),
            "market": self.monitor.health(),
            "narrative": self.explainer.health(),
            "critical_alert": alert is not None and alert.level == AlertLevel.CRITICAL,
        })
        return base

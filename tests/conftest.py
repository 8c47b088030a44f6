"""
Shared fixtures for the Faktory test suite.

Provides:
- MockMessageBus — captures publishes, no Redis needed
- FakeLedger — in-memory ledger with call log and scripted write failures
- FakeClock / SleepRecorder — deterministic time
- Model factories for building test data quickly
- build_orchestrator — a fully wired CycleOrchestrator over the fakes
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from agents.execution.pipeline import DecisionExecutionPipeline
from agents.market.monitor import MarketMonitor
from agents.market.prices import StaticPriceSource
from agents.market.regime import RegimeClassifier
from agents.meta.orchestrator import CycleOrchestrator
from agents.narrative.explainer import NarrativeExplainer
from core.broadcaster import EventBroadcaster
from core.models import (
    AgentConfig,
    Deposit,
    IdListResult,
    Invoice,
    MarketConditions,
    Strategy,
    VolatilityLevel,
)
from core.resilience import CircuitBreaker, RateLimiter, RetryPolicy

NOW = 1_700_000_000
DAY = 86_400


# ---------------------------------------------------------------------------
# MockMessageBus
# ---------------------------------------------------------------------------

class MockMessageBus:
    """In-memory message bus that captures all publishes."""

    def __init__(self) -> None:
        self.published: dict[str, list[Any]] = {}

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def health_check(self) -> bool:
        return True

    async def publish_to(self, stream: str, model: Any) -> str:
        self.published.setdefault(stream, []).append(model)
        return "mock-id"

    def get_published(self, stream: str) -> list[Any]:
        return self.published.get(stream, [])


@pytest.fixture
def mock_bus() -> MockMessageBus:
    return MockMessageBus()


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = float(NOW)) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Drop-in for ``asyncio.sleep`` that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ---------------------------------------------------------------------------
# FakeLedger
# ---------------------------------------------------------------------------

class FakeLedger:
    """In-memory ledger.

    ``calls`` logs every method invoked, so tests can assert "zero ledger
    calls".  ``write_failures`` is consumed one exception per write attempt.
    """

    def __init__(
        self,
        invoices: list[Invoice] | None = None,
        deposits: list[Deposit] | None = None,
    ) -> None:
        self.invoices: dict[str, Invoice] = {i.token_id: i for i in invoices or []}
        self.deposits: dict[str, Deposit] = {d.token_id: d for d in deposits or []}
        self.invoice_ids_error: str | None = None
        self.deposit_ids_error: str | None = None
        self.invoice_errors: dict[str, Exception] = {}
        self.write_failures: list[Exception] = []
        self.writes: list[tuple[str, Strategy, int, str]] = []
        self.calls: list[str] = []
        self.read_delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    async def get_active_invoice_ids(self) -> IdListResult:
        self.calls.append("get_active_invoice_ids")
        if self.invoice_ids_error:
            return IdListResult(ids=[], error=self.invoice_ids_error)
        return IdListResult(ids=list(self.invoices))

    async def get_active_deposit_ids(self) -> IdListResult:
        self.calls.append("get_active_deposit_ids")
        if self.deposit_ids_error:
            return IdListResult(ids=[], error=self.deposit_ids_error)
        return IdListResult(ids=list(self.deposits))

    async def get_invoice(self, token_id: str) -> Invoice | None:
        self.calls.append("get_invoice")
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.read_delay:
                await asyncio.sleep(self.read_delay)
            if token_id in self.invoice_errors:
                raise self.invoice_errors[token_id]
            return self.invoices.get(token_id)
        finally:
            self.in_flight -= 1

    async def get_deposit(self, token_id: str) -> Deposit | None:
        self.calls.append("get_deposit")
        return self.deposits.get(token_id)

    async def get_price(self, feed_id: str) -> float | None:
        self.calls.append("get_price")
        return None

    async def record_decision(
        self, token_id: str, strategy: Strategy, confidence: int, reasoning: str,
    ) -> str:
        self.calls.append("record_decision")
        if self.write_failures:
            raise self.write_failures.pop(0)
        self.writes.append((token_id, strategy, confidence, reasoning))
        return f"0x{len(self.writes):064x}"


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------

def make_invoice(
    token_id: str = "1",
    days_until_due: float = 90,
    risk_score: int = 85,
    payment_probability: int = 95,
    now: int = NOW,
    **kw: Any,
) -> Invoice:
    return Invoice(
        token_id=token_id,
        due_date=int(now + days_until_due * DAY),
        created_at=now - 10 * DAY,
        issuer="0x000000000000000000000000000000000000dEaD",
        risk_score=risk_score,
        payment_probability=payment_probability,
        **kw,
    )


def make_deposit(
    token_id: str = "1",
    strategy: Strategy = Strategy.HOLD,
    days_ago: float = 1,
    now: int = NOW,
    **kw: Any,
) -> Deposit:
    return Deposit(
        token_id=token_id,
        owner="0x000000000000000000000000000000000000bEEF",
        strategy=strategy,
        deposit_time=int(now - days_ago * DAY),
        principal=10_000 * 10**6,
        **kw,
    )


def make_conditions(
    change: float = 0.0,
    volatility: VolatilityLevel | None = None,
    eth_price: float | None = 3_000.0,
) -> MarketConditions:
    from agents.market.monitor import volatility_tier

    return MarketConditions(
        eth_price=eth_price,
        eth_price_change_24h=change,
        volatility_level=volatility or volatility_tier(change),
        last_updated=float(NOW),
        sample_count=2,
    )


# ---------------------------------------------------------------------------
# Orchestrator wiring
# ---------------------------------------------------------------------------

def build_orchestrator(
    ledger: FakeLedger | None = None,
    clock: FakeClock | None = None,
    config: AgentConfig | None = None,
    prices: dict[str, float | None] | None = None,
    bus: MockMessageBus | None = None,
    **kw: Any,
) -> CycleOrchestrator:
    """A CycleOrchestrator over fakes. ``orch.sleeps`` records retry delays."""
    ledger = ledger or FakeLedger()
    clock = clock or FakeClock()
    sleeps = SleepRecorder()
    broadcaster = EventBroadcaster()
    pipeline = DecisionExecutionPipeline(
        ledger=ledger,
        broadcaster=broadcaster,
        rate_limiter=RateLimiter(cooldown=300, clock=clock),
        breaker=CircuitBreaker(threshold=3, reset_timeout=60, clock=clock),
        retry_policy=RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0),
        sleep=sleeps,
    )
    orch = CycleOrchestrator(
        ledger=ledger,
        monitor=MarketMonitor(StaticPriceSource(prices), clock=clock),
        regime=RegimeClassifier(clock=clock),
        pipeline=pipeline,
        broadcaster=broadcaster,
        explainer=NarrativeExplainer(clock=clock),
        config=config or AgentConfig(),
        bus=bus,
        clock=clock,
        **kw,
    )
    orch.sleeps = sleeps  # type: ignore[attr-defined]
    return orch


def thoughts_for(orch: CycleOrchestrator, token_id: str) -> list[dict[str, Any]]:
    """Replay-buffer messages concerning *token_id*, oldest first."""
    return [m for m in orch.broadcaster.replay() if m["payload"]["token_id"] == token_id]

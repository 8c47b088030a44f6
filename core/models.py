"""
Canonical Pydantic v2 domain models shared across every agent component.
"""

from __future__ import annotations

import time
import uuid
from enum import IntEnum, StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now() -> float:
    return time.time()


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Strategy(IntEnum):
    """Yield strategy, ordered by risk: HOLD < CONSERVATIVE < AGGRESSIVE."""

    HOLD = 0
    CONSERVATIVE = 1
    AGGRESSIVE = 2

    @property
    def display_name(self) -> str:
        return STRATEGY_NAMES[self]

    @property
    def apy_bps(self) -> int:
        return STRATEGY_APY_BPS[self]

    @property
    def apy_pct(self) -> float:
        return STRATEGY_APY_BPS[self] / 100


# APY in basis points; must match YieldVault.sol.
STRATEGY_APY_BPS: dict[Strategy, int] = {
    Strategy.HOLD: 0,
    Strategy.CONSERVATIVE: 350,
    Strategy.AGGRESSIVE: 700,
}

STRATEGY_NAMES: dict[Strategy, str] = {
    Strategy.HOLD: "Hold",
    Strategy.CONSERVATIVE: "Conservative",
    Strategy.AGGRESSIVE: "Aggressive",
}


class InvoiceStatus(IntEnum):
    ACTIVE = 0
    IN_YIELD = 1
    PAID = 2
    DEFAULTED = 3
    CANCELLED = 4


class VolatilityLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EXTREME = "extreme"


class AlertLevel(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class MarketRegime(StrEnum):
    BULL = "bull"
    BEAR = "bear"
    VOLATILE = "volatile"
    NEUTRAL = "neutral"


class ThoughtType(StrEnum):
    THINKING = "thinking"
    ANALYSIS = "analysis"
    DECISION = "decision"
    EXECUTION = "execution"
    ERROR = "error"
    SKIP = "skip"


class CycleState(StrEnum):
    IDLE = "idle"
    FETCHING_MARKET = "fetching_market"
    SCANNING_INVOICES = "scanning_invoices"
    ANALYZING = "analyzing"
    EXECUTING_SELECTED = "executing_selected"


class SkipReason(StrEnum):
    RATE_LIMITED = "rate_limited"
    CIRCUIT_OPEN = "circuit_open"
    NOT_ACTIONABLE = "not_actionable"
    CYCLE_IN_PROGRESS = "cycle_in_progress"


# ---------------------------------------------------------------------------
# Ledger snapshots (read-only)
# ---------------------------------------------------------------------------

class Invoice(BaseModel):
    """Invoice NFT snapshot read from the ledger."""

    model_config = ConfigDict(frozen=True)

    token_id: str
    due_date: int = Field(description="Unix seconds.")
    created_at: int = 0
    issuer: str = ""
    status: InvoiceStatus = InvoiceStatus.ACTIVE
    risk_score: int = Field(ge=0, le=100, description="Higher = safer payer.")
    payment_probability: int = Field(ge=0, le=100)
    data_commitment: str = ""
    amount_commitment: str = ""


class Deposit(BaseModel):
    """Active YieldVault deposit. Absence is modelled as ``None``."""

    model_config = ConfigDict(frozen=True)

    token_id: str
    owner: str
    strategy: Strategy
    deposit_time: int
    principal: int = 0
    accrued_yield: int = 0
    last_yield_update: int = 0
    active: bool = True


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

class StrategyRecommendation(BaseModel):
    """Raw optimizer output before market/regime adjustment."""

    model_config = ConfigDict(frozen=True)

    strategy: Strategy
    confidence: int = Field(ge=0, le=100)
    reasoning: str
    factors: list[str] = Field(default_factory=list)


class AnalysisResult(BaseModel):
    """One analysis of one invoice. Adjustments produce new instances."""

    model_config = ConfigDict(frozen=True)

    token_id: str
    invoice: Invoice
    deposit: Deposit | None = None
    risk_score: int
    payment_probability: int
    days_until_due: int = Field(description="Negative when overdue.")
    current_strategy: Strategy = Strategy.HOLD
    recommended_strategy: Strategy
    confidence: int = Field(ge=0, le=100)
    should_act: bool
    reasoning: str
    factors: list[str] = Field(default_factory=list)
    market_override: bool = False
    pre_override_strategy: Strategy | None = None
    adjustments: list[str] = Field(default_factory=list)
    analyzed_at: float = Field(default_factory=_now)

    @property
    def is_deposited(self) -> bool:
        return self.deposit is not None


# ---------------------------------------------------------------------------
# Market
# ---------------------------------------------------------------------------

class PriceSample(BaseModel):
    """One observation of tracked asset prices."""

    timestamp: float
    prices: dict[str, float] = Field(default_factory=dict)


class MarketConditions(BaseModel):
    """Current market snapshot, mutated in place by the MarketMonitor.

    ``eth_price_change_24h`` keeps its historical name for downstream
    consumers but is computed over the retained window (4h by default).
    """

    eth_price: float | None = None
    mnt_price: float | None = None
    eth_price_change_24h: float = 0.0
    volatility_level: VolatilityLevel = VolatilityLevel.LOW
    last_updated: float = 0.0
    sample_count: int = 0
    simulated: bool = False


class MarketAlert(BaseModel):
    """Derived from MarketConditions on demand; never stored."""

    model_config = ConfigDict(frozen=True)

    level: AlertLevel
    message: str
    price_change: float
    recommendation: str


class RegimeAdjustment(BaseModel):
    """Per-regime strategy multipliers and description."""

    regime: MarketRegime
    aggressive_multiplier: float = 1.0
    conservative_multiplier: float = 1.0
    hold_multiplier: float = 1.0
    description: str = ""


class RegimeStats(BaseModel):
    current_regime: MarketRegime
    candidate_regime: MarketRegime | None = None
    candidate_streak: int = 0
    observations: int = 0
    last_change: float = 0.0
    last_update: float = 0.0
    avg_price_change: float = 0.0
    trend_pct: float = 0.0
    high_volatility_ratio: float = 0.0
    adjustment: RegimeAdjustment


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

class CircuitBreakerState(BaseModel):
    consecutive_failures: int = 0
    is_open: bool = False
    reset_at: float | None = None


class ExecutionResult(BaseModel):
    """Outcome of a ledger write or an intentional no-op."""

    success: bool
    reference: str | None = Field(default=None, description="Transaction hash.")
    error: str | None = None
    attempts: int = 0
    skipped: SkipReason | None = None


class IdListResult(BaseModel):
    """Ledger id enumeration. ``error`` distinguishes failure from emptiness."""

    ids: list[str] = Field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ---------------------------------------------------------------------------
# Events & configuration
# ---------------------------------------------------------------------------

class AgentThought(BaseModel):
    """A structured event describing one stage of the agent's reasoning."""

    thought_id: str = Field(default_factory=_new_id)
    type: ThoughtType
    token_id: str = "system"
    message: str
    timestamp: float = Field(default_factory=_now)
    data: dict[str, Any] = Field(default_factory=dict)


class AgentConfig(BaseModel):
    """Runtime configuration surface, adjustable from the control API."""

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    min_confidence: int = Field(default=70, ge=0, le=100, alias="minConfidence")
    analysis_interval_ms: int = Field(default=30_000, ge=1_000, alias="analysisIntervalMs")
    max_concurrent_analyses: int = Field(default=5, ge=1, le=50, alias="maxConcurrentAnalyses")
    auto_execute: bool = Field(default=True, alias="autoExecute")

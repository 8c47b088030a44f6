"""
Strategy optimizer — pure, deterministic scoring of a single invoice.

Score contributions:

  risk score            >=80 +30 | >=60 +15 | >=40 +5  | else −10
  payment probability   >=90 +25 | >=75 +15 | >=50 +5  | else −15
  days until due        >=60 +20 | >=30 +15 | >=14 +5  | >=0 −5 | overdue −30

  score >= 60  → AGGRESSIVE    confidence = min(95, 70 + (score − 60))
  score >= 30  → CONSERVATIVE  confidence = min(90, 60 + (score − 30))
  otherwise    → HOLD          confidence = min(85, 50 + |score|)

An overdue invoice is always HOLD.  An existing deposit only adds context
to the factors and reasoning; it never moves the target.

No I/O, no mutable state: identical inputs give identical outputs.
"""

from __future__ import annotations

from core.models import (
    AnalysisResult,
    Deposit,
    Invoice,
    MarketConditions,
    Strategy,
    StrategyRecommendation,
    VolatilityLevel,
)

SECONDS_PER_DAY = 24 * 60 * 60

# Score → strategy boundaries.
_AGGRESSIVE_SCORE = 60
_CONSERVATIVE_SCORE = 30

# Deposit-context thresholds.
_UPGRADE_HINT_SCORE = 50
_DOWNGRADE_HINT_SCORE = 30
_STALE_HOLD_DAYS = 7

# Composite score weights.
_WEIGHTS: dict[str, float] = {
    "risk": 0.25,
    "payment": 0.25,
    "time": 0.20,
    "market": 0.20,
    "momentum": 0.10,
}

_VOLATILITY_SCORES: dict[VolatilityLevel, float] = {
    VolatilityLevel.LOW: 1.0,
    VolatilityLevel.MEDIUM: 0.7,
    VolatilityLevel.HIGH: 0.4,
    VolatilityLevel.EXTREME: 0.1,
}


def clamp_confidence(value: float) -> int:
    return int(max(0, min(100, round(value))))


def days_until_due(invoice: Invoice, now: int) -> int:
    """Whole days until due, floored; negative once the invoice is overdue."""
    return (invoice.due_date - now) // SECONDS_PER_DAY


# ---------------------------------------------------------------------------
# Optimizer
# ---------------------------------------------------------------------------

def _risk_factor(risk: int) -> tuple[int, str]:
    if risk >= 80:
        return 30, f"High risk score ({risk}/100) indicates reliable payer"
    if risk >= 60:
        return 15, f"Moderate risk score ({risk}/100)"
    if risk >= 40:
        return 5, f"Below average risk score ({risk}/100) suggests caution"
    return -10, f"Low risk score ({risk}/100) indicates high default risk"


def _payment_factor(prob: int) -> tuple[int, str]:
    if prob >= 90:
        return 25, f"Excellent payment probability ({prob}%)"
    if prob >= 75:
        return 15, f"Good payment probability ({prob}%)"
    if prob >= 50:
        return 5, f"Moderate payment probability ({prob}%)"
    return -15, f"Low payment probability ({prob}%) - significant risk"


def _duration_factor(days: int) -> tuple[int, str]:
    if days >= 60:
        return 20, f"Long duration ({days} days) allows for yield accumulation"
    if days >= 30:
        return 15, f"Moderate duration ({days} days) for yield"
    if days >= 14:
        return 5, f"Short duration ({days} days) limits yield potential"
    if days >= 0:
        return -5, f"Very short duration ({days} days) - minimal yield opportunity"
    return -30, f"Invoice is OVERDUE by {abs(days)} days - high risk"


def _deposit_factors(deposit: Deposit, score: int, now: int) -> list[str]:
    factors: list[str] = []
    held_days = (now - deposit.deposit_time) / SECONDS_PER_DAY
    if deposit.strategy == Strategy.HOLD and score > _UPGRADE_HINT_SCORE:
        factors.append(
            "Currently on Hold; can be upgraded from Hold as conditions favor yield optimization"
        )
    elif deposit.strategy == Strategy.AGGRESSIVE and score < _DOWNGRADE_HINT_SCORE:
        factors.append("Aggressive strategy may be too risky given current conditions")
    else:
        factors.append(f"Currently deposited under {deposit.strategy.display_name} strategy")

    if deposit.strategy == Strategy.HOLD and held_days > _STALE_HOLD_DAYS:
        factors.append(
            f"Invoice has been on Hold for {int(held_days)} days - consider activation"
        )
    return factors


def _select(score: int) -> tuple[Strategy, int]:
    if score >= _AGGRESSIVE_SCORE:
        return Strategy.AGGRESSIVE, clamp_confidence(min(95, 70 + (score - _AGGRESSIVE_SCORE)))
    if score >= _CONSERVATIVE_SCORE:
        return Strategy.CONSERVATIVE, clamp_confidence(min(90, 60 + (score - _CONSERVATIVE_SCORE)))
    return Strategy.HOLD, clamp_confidence(min(85, 50 + abs(score)))


def _reasoning(strategy: Strategy, confidence: int, factors: list[str], days: int) -> str:
    top = ". ".join(factors[:3])
    if strategy == Strategy.AGGRESSIVE:
        return (
            f"Recommending AGGRESSIVE strategy with {confidence}% confidence. {top}. "
            f"With {days} days until due and strong risk metrics, this invoice is "
            f"well-suited for higher-yield opportunities (6-8% APY)."
        )
    if strategy == Strategy.CONSERVATIVE:
        return (
            f"Recommending CONSERVATIVE strategy with {confidence}% confidence. {top}. "
            "The moderate risk profile suggests a balanced approach with stable yields "
            "(3-4% APY) while maintaining capital protection."
        )
    return (
        f"Recommending HOLD strategy with {confidence}% confidence. {top}. "
        "Current conditions do not favor active yield strategies. "
        "Will continue monitoring for improved conditions."
    )


def optimize(invoice: Invoice, deposit: Deposit | None, now: int) -> StrategyRecommendation:
    """Score *invoice* at unix time *now* and pick a strategy."""
    days = days_until_due(invoice, now)

    risk_pts, risk_note = _risk_factor(invoice.risk_score)
    pay_pts, pay_note = _payment_factor(invoice.payment_probability)
    dur_pts, dur_note = _duration_factor(days)
    score = risk_pts + pay_pts + dur_pts

    overdue = invoice.due_date < now
    if overdue:
        # The overdue note leads so it always survives into the reasoning.
        factors = [dur_note, risk_note, pay_note]
    else:
        factors = [risk_note, pay_note, dur_note]

    if deposit is not None:
        factors.extend(_deposit_factors(deposit, score, now))

    strategy, confidence = _select(score)
    if overdue:
        strategy = Strategy.HOLD
        confidence = clamp_confidence(min(85, 50 + abs(score)))

    return StrategyRecommendation(
        strategy=strategy,
        confidence=confidence,
        reasoning=_reasoning(strategy, confidence, factors, days),
        factors=factors,
    )


# ---------------------------------------------------------------------------
# Should-act gate
# ---------------------------------------------------------------------------

def should_change_strategy(
    current: Strategy,
    recommended: Strategy,
    confidence: int,
    min_confidence: int = 70,
) -> bool:
    """Turn a recommendation into a binding decision.

    Same strategy → never. Below ``min_confidence`` → never. Moving to an
    equal-or-safer strategy needs ``min_confidence``; moving to a riskier
    one needs ``min_confidence + 10``.
    """
    if current == recommended:
        return False
    if confidence < min_confidence:
        return False
    if recommended < current:
        return True
    return confidence >= min_confidence + 10


def analyze_invoice(
    invoice: Invoice,
    deposit: Deposit | None,
    now: int,
    min_confidence: int = 70,
) -> AnalysisResult:
    """Run the optimizer and gate its output against the current position."""
    rec = optimize(invoice, deposit, now)
    current = deposit.strategy if deposit is not None else Strategy.HOLD
    return AnalysisResult(
        token_id=invoice.token_id,
        invoice=invoice,
        deposit=deposit,
        risk_score=invoice.risk_score,
        payment_probability=invoice.payment_probability,
        days_until_due=days_until_due(invoice, now),
        current_strategy=current,
        recommended_strategy=rec.strategy,
        confidence=rec.confidence,
        should_act=should_change_strategy(current, rec.strategy, rec.confidence, min_confidence),
        reasoning=rec.reasoning,
        factors=rec.factors,
        pre_override_strategy=rec.strategy,
        analyzed_at=float(now),
    )


# ---------------------------------------------------------------------------
# Supplementary context (attached to broadcasts, never changes the target)
# ---------------------------------------------------------------------------

def calculate_composite_score(
    risk_score: int,
    payment_probability: int,
    days: int,
    volatility: VolatilityLevel,
    deposit_days: float,
) -> tuple[float, dict[str, float], list[str]]:
    """Weighted 0..1 composite with its per-factor breakdown and insights."""
    insights: list[str] = []
    breakdown: dict[str, float] = {}

    breakdown["risk"] = risk_score / 100
    if risk_score >= 80:
        insights.append("Strong debtor reliability")
    elif risk_score < 50:
        insights.append("Elevated counterparty risk detected")

    breakdown["payment"] = payment_probability / 100
    if payment_probability >= 90:
        insights.append("Historical payment patterns excellent")
    elif payment_probability < 70:
        insights.append("Payment uncertainty warrants caution")

    breakdown["time"] = max(0.0, min(days / 90, 1.0))
    if days >= 60:
        insights.append("Long runway enables yield accumulation")
    elif days < 14:
        insights.append("Limited time constrains strategy options")

    breakdown["market"] = _VOLATILITY_SCORES.get(volatility, 0.5)
    if volatility in (VolatilityLevel.HIGH, VolatilityLevel.EXTREME):
        insights.append("Market stress signals defensive positioning")

    breakdown["momentum"] = max(0.0, min(deposit_days / 30, 1.0))
    if deposit_days > 14:
        insights.append("Established position enables strategy refinement")

    score = sum(breakdown[k] * w for k, w in _WEIGHTS.items())
    return round(score, 4), breakdown, insights


# (name, confidence, recommendation, predicate(risk, days, volatility))
_PATTERNS = (
    (
        "Opportunity Window", 82,
        "Stable conditions + long duration = maximize yield exposure",
        lambda r, d, v: r >= 70 and d >= 45 and v == VolatilityLevel.LOW,
    ),
    (
        "Safe Haven", 90,
        "Optimal conditions for aggressive yield strategy",
        lambda r, d, v: r >= 80 and d >= 30 and v in (VolatilityLevel.LOW, VolatilityLevel.MEDIUM),
    ),
    (
        "Time Pressure", 85,
        "Short duration limits yield potential - prioritize liquidity",
        lambda r, d, v: d < 14 and r >= 60,
    ),
    (
        "Risk-Reward Balance", 75,
        "Moderate risk profile suits conservative yield strategy",
        lambda r, d, v: 60 <= r < 80 and d >= 30 and v != VolatilityLevel.EXTREME,
    ),
    (
        "Defensive Posture", 88,
        "Elevated risk signals - protect capital over yield",
        lambda r, d, v: r < 60 or v in (VolatilityLevel.HIGH, VolatilityLevel.EXTREME),
    ),
)


def recognize_pattern(risk_score: int, days: int, volatility: VolatilityLevel) -> tuple[str, int, str]:
    """Return ``(pattern_name, confidence, recommendation)`` for the first match."""
    for name, confidence, recommendation, matches in _PATTERNS:
        if matches(risk_score, days, volatility):
            return name, confidence, recommendation
    return "Standard", 70, "Apply balanced risk-adjusted strategy"


def generate_market_reasoning(reasoning: str, conditions: MarketConditions | None) -> str:
    """Prefix a volatility note unless the market is calm."""
    if conditions is None or conditions.volatility_level == VolatilityLevel.LOW:
        return reasoning
    if conditions.volatility_level == VolatilityLevel.EXTREME:
        note = "EXTREME market volatility detected - prioritizing capital protection."
    elif conditions.volatility_level == VolatilityLevel.HIGH:
        note = "High market volatility - factoring increased risk into strategy."
    else:
        note = "Moderate market movement - maintaining vigilance."
    if reasoning.startswith(note):
        return reasoning
    return f"{note} {reasoning}"

"""
Adjustment layer — applies market alerts, then the market regime, to an
optimizer AnalysisResult.

Each rule that fires records a tag in ``AnalysisResult.adjustments`` and is
skipped when its tag is already present, so applying ``adjust`` twice with
the same inputs returns an equal result.  The optimizer's own pick is kept
in ``pre_override_strategy``.  Alert and bear/volatile rules only ever lower
the recommendation; an optimizer Hold (overdue or weak invoice) stays Hold.
"""

from __future__ import annotations

from agents.strategy.optimizer import generate_market_reasoning, should_change_strategy
from core.models import (
    AlertLevel,
    AnalysisResult,
    MarketAlert,
    MarketConditions,
    MarketRegime,
    RegimeAdjustment,
    Strategy,
)

TAG_CRITICAL = "alert:critical"
TAG_WARNING = "alert:warning"
TAG_REGIME_BLOCK = "regime:block_aggressive"
TAG_REGIME_DERISK = "regime:bear_derisk"
TAG_BULL_UPGRADE = "regime:bull_upgrade"
TAG_VOLATILITY = "volatility_note"

_CRITICAL_CONFIDENCE = 95
_WARNING_MIN_CONFIDENCE = 85
_BEAR_DERISK_MIN_CONFIDENCE = 80


def _with(analysis: AnalysisResult, tag: str, **changes: object) -> AnalysisResult:
    return analysis.model_copy(update={
        **changes,
        "adjustments": [*analysis.adjustments, tag],
        "pre_override_strategy": analysis.pre_override_strategy or analysis.recommended_strategy,
    })


def apply_alert(
    analysis: AnalysisResult,
    conditions: MarketConditions | None,
    alert: MarketAlert | None,
    min_confidence: int = 70,
) -> AnalysisResult:
    """Critical alerts force Hold; warnings cap the position at Conservative."""
    if alert is None or conditions is None:
        return analysis
    current = analysis.current_strategy

    if alert.level == AlertLevel.CRITICAL:
        if TAG_CRITICAL in analysis.adjustments:
            return analysis
        return _with(
            analysis, TAG_CRITICAL,
            recommended_strategy=Strategy.HOLD,
            confidence=_CRITICAL_CONFIDENCE,
            should_act=current != Strategy.HOLD,
            market_override=True,
            reasoning=(
                f"MARKET OVERRIDE: {alert.message}. Moving to HOLD strategy to protect "
                f"capital. Original analysis suggested "
                f"{analysis.recommended_strategy.display_name} but market conditions "
                "require defensive positioning."
            ),
        )

    if alert.level == AlertLevel.WARNING and TAG_WARNING not in analysis.adjustments:
        # Stress rules never lift a Hold recommendation.
        if current == Strategy.AGGRESSIVE and analysis.recommended_strategy > Strategy.HOLD:
            return _with(
                analysis, TAG_WARNING,
                recommended_strategy=Strategy.CONSERVATIVE,
                confidence=max(analysis.confidence, _WARNING_MIN_CONFIDENCE),
                should_act=True,
                market_override=True,
                reasoning=(
                    f"MARKET ADJUSTMENT: {alert.message}. Reducing from Aggressive to "
                    f"Conservative strategy. Market volatility "
                    f"({conditions.volatility_level}) suggests reducing risk exposure."
                ),
            )
        if analysis.recommended_strategy == Strategy.AGGRESSIVE:
            return _with(
                analysis, TAG_WARNING,
                recommended_strategy=Strategy.CONSERVATIVE,
                should_act=should_change_strategy(
                    current, Strategy.CONSERVATIVE, analysis.confidence, min_confidence,
                ),
                market_override=True,
                reasoning=(
                    "MARKET CAUTION: Blocking upgrade to Aggressive due to market stress. "
                    f"{alert.message}. Recommending Conservative instead."
                ),
            )
    return analysis


def apply_regime(
    analysis: AnalysisResult,
    adjustment: RegimeAdjustment,
    min_confidence: int = 70,
    bull_upgrade_confidence: int = 80,
) -> AnalysisResult:
    """Bias the recommendation by market regime."""
    regime = adjustment.regime
    current = analysis.current_strategy

    # A critical override is final.
    if TAG_CRITICAL in analysis.adjustments:
        return analysis

    if (
        regime in (MarketRegime.BEAR, MarketRegime.VOLATILE)
        and analysis.recommended_strategy == Strategy.AGGRESSIVE
        and current != Strategy.AGGRESSIVE
        and TAG_REGIME_BLOCK not in analysis.adjustments
    ):
        analysis = _with(
            analysis, TAG_REGIME_BLOCK,
            recommended_strategy=Strategy.CONSERVATIVE,
            should_act=should_change_strategy(
                current, Strategy.CONSERVATIVE, analysis.confidence, min_confidence,
            ),
            market_override=True,
            reasoning=(
                f"REGIME ADJUSTMENT ({regime.upper()}): {adjustment.description}. "
                "Blocking upgrade to Aggressive strategy. Recommending Conservative "
                "instead to balance yield and risk."
            ),
        )

    if (
        regime == MarketRegime.BEAR
        and current == Strategy.AGGRESSIVE
        and analysis.recommended_strategy > Strategy.HOLD
        and TAG_REGIME_DERISK not in analysis.adjustments
    ):
        analysis = _with(
            analysis, TAG_REGIME_DERISK,
            recommended_strategy=Strategy.CONSERVATIVE,
            confidence=max(analysis.confidence, _BEAR_DERISK_MIN_CONFIDENCE),
            should_act=True,
            market_override=True,
            reasoning=(
                f"REGIME ADJUSTMENT (BEAR MARKET): {adjustment.description}. "
                "Recommending de-risking from Aggressive to Conservative."
            ),
        )

    if (
        regime == MarketRegime.BULL
        and analysis.recommended_strategy == Strategy.CONSERVATIVE
        and current != Strategy.AGGRESSIVE
        and analysis.confidence >= bull_upgrade_confidence
        and analysis.days_until_due >= 0
        and TAG_WARNING not in analysis.adjustments
        and TAG_BULL_UPGRADE not in analysis.adjustments
    ):
        analysis = _with(
            analysis, TAG_BULL_UPGRADE,
            recommended_strategy=Strategy.AGGRESSIVE,
            should_act=should_change_strategy(
                current, Strategy.AGGRESSIVE, analysis.confidence, min_confidence,
            ),
            market_override=True,
            reasoning=(
                f"{analysis.reasoning} REGIME NOTE: {adjustment.description}; "
                "upgrading to Aggressive."
            ),
        )

    return analysis


def adjust(
    analysis: AnalysisResult,
    conditions: MarketConditions | None,
    alert: MarketAlert | None,
    regime: RegimeAdjustment | None = None,
    min_confidence: int = 70,
    bull_upgrade_confidence: int = 80,
) -> AnalysisResult:
    """Alert rules, then regime rules, then the volatility note."""
    analysis = apply_alert(analysis, conditions, alert, min_confidence)
    if regime is not None:
        analysis = apply_regime(analysis, regime, min_confidence, bull_upgrade_confidence)
    if TAG_VOLATILITY not in analysis.adjustments:
        reasoning = generate_market_reasoning(analysis.reasoning, conditions)
        if reasoning != analysis.reasoning:
            analysis = analysis.model_copy(update={
                "reasoning": reasoning,
                "adjustments": [*analysis.adjustments, TAG_VOLATILITY],
            })
    return analysis


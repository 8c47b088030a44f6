"""Tests for the alert and regime adjustment layer."""

import pytest

from agents.market.monitor import check_alert
from agents.market.regime import REGIME_ADJUSTMENTS
from agents.strategy.adjustment import (
    TAG_BULL_UPGRADE,
    TAG_CRITICAL,
    TAG_REGIME_BLOCK,
    TAG_REGIME_DERISK,
    TAG_VOLATILITY,
    TAG_WARNING,
    adjust,
    apply_alert,
    apply_regime,
)
from agents.strategy.optimizer import analyze_invoice
from core.models import MarketRegime, Strategy
from tests.conftest import NOW, make_conditions, make_deposit, make_invoice


def _analysis(current: Strategy | None = Strategy.HOLD, **invoice_kw):
    deposit = make_deposit(strategy=current) if current is not None else None
    return analyze_invoice(make_invoice(**invoice_kw), deposit, NOW)


def _alert(change: float):
    conditions = make_conditions(change)
    return conditions, check_alert(conditions)


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

class TestCriticalAlert:
    def test_forces_hold(self):
        conditions, alert = _alert(-9)
        result = apply_alert(_analysis(Strategy.AGGRESSIVE), conditions, alert)
        assert result.recommended_strategy == Strategy.HOLD
        assert result.confidence == 95
        assert result.should_act is True
        assert result.market_override is True
        assert result.pre_override_strategy == Strategy.AGGRESSIVE
        assert result.reasoning.startswith("MARKET OVERRIDE")
        assert TAG_CRITICAL in result.adjustments

    def test_already_hold_not_actionable(self):
        conditions, alert = _alert(-9)
        result = apply_alert(_analysis(Strategy.HOLD), conditions, alert)
        assert result.recommended_strategy == Strategy.HOLD
        assert result.should_act is False

    def test_regime_cannot_undo_critical(self):
        conditions, alert = _alert(-9)
        result = adjust(
            _analysis(Strategy.CONSERVATIVE), conditions, alert,
            REGIME_ADJUSTMENTS[MarketRegime.BULL],
        )
        assert result.recommended_strategy == Strategy.HOLD
        assert TAG_BULL_UPGRADE not in result.adjustments


class TestWarningAlert:
    def test_caps_aggressive_position(self):
        conditions, alert = _alert(-6)
        result = apply_alert(_analysis(Strategy.AGGRESSIVE), conditions, alert)
        assert result.recommended_strategy == Strategy.CONSERVATIVE
        assert result.confidence >= 85
        assert result.should_act is True
        assert result.reasoning.startswith("MARKET ADJUSTMENT")
        assert TAG_WARNING in result.adjustments

    def test_blocks_upgrade_to_aggressive(self):
        conditions, alert = _alert(-6)
        result = apply_alert(_analysis(Strategy.HOLD), conditions, alert)
        assert result.recommended_strategy == Strategy.CONSERVATIVE
        assert result.should_act is True  # 85 clears the riskier-move bar of 80
        assert result.pre_override_strategy == Strategy.AGGRESSIVE
        assert result.reasoning.startswith("MARKET CAUTION")

    def test_gate_recomputed_with_min_confidence(self):
        conditions, alert = _alert(-6)
        result = apply_alert(_analysis(Strategy.HOLD), conditions, alert, min_confidence=80)
        assert result.should_act is False

    def test_overdue_aggressive_position_stays_hold(self):
        base = _analysis(Strategy.AGGRESSIVE, days_until_due=-5)
        assert base.recommended_strategy == Strategy.HOLD
        conditions, alert = _alert(-6)
        result = adjust(base, conditions, alert, REGIME_ADJUSTMENTS[MarketRegime.NEUTRAL])
        assert result.recommended_strategy == Strategy.HOLD
        assert result.should_act == base.should_act
        assert TAG_WARNING not in result.adjustments

    def test_info_alert_changes_nothing(self):
        conditions, alert = _alert(6)
        analysis = _analysis(Strategy.HOLD)
        assert apply_alert(analysis, conditions, alert) == analysis

    def test_no_alert(self):
        analysis = _analysis()
        assert apply_alert(analysis, make_conditions(0), None) == analysis


# ---------------------------------------------------------------------------
# Regime
# ---------------------------------------------------------------------------

class TestRegime:
    def test_bear_blocks_aggressive(self):
        result = apply_regime(_analysis(Strategy.HOLD), REGIME_ADJUSTMENTS[MarketRegime.BEAR])
        assert result.recommended_strategy == Strategy.CONSERVATIVE
        assert TAG_REGIME_BLOCK in result.adjustments
        assert "BEAR" in result.reasoning

    def test_volatile_blocks_aggressive(self):
        result = apply_regime(_analysis(None), REGIME_ADJUSTMENTS[MarketRegime.VOLATILE])
        assert result.recommended_strategy == Strategy.CONSERVATIVE
        assert result.pre_override_strategy == Strategy.AGGRESSIVE

    def test_bear_derisks_aggressive_position(self):
        result = apply_regime(_analysis(Strategy.AGGRESSIVE), REGIME_ADJUSTMENTS[MarketRegime.BEAR])
        assert result.recommended_strategy == Strategy.CONSERVATIVE
        assert result.confidence >= 80
        assert result.should_act is True
        assert TAG_REGIME_DERISK in result.adjustments
        assert TAG_REGIME_BLOCK not in result.adjustments

    def test_bear_keeps_overdue_aggressive_position_at_hold(self):
        base = _analysis(Strategy.AGGRESSIVE, days_until_due=-5)
        result = apply_regime(base, REGIME_ADJUSTMENTS[MarketRegime.BEAR])
        assert result.recommended_strategy == Strategy.HOLD
        assert TAG_REGIME_DERISK not in result.adjustments
        assert result == base

    def test_bear_derisk_keeps_weak_invoice_at_hold(self):
        base = _analysis(Strategy.AGGRESSIVE, risk_score=20, payment_probability=30)
        assert base.recommended_strategy == Strategy.HOLD
        result = apply_regime(base, REGIME_ADJUSTMENTS[MarketRegime.BEAR])
        assert result.recommended_strategy == Strategy.HOLD

    def test_volatile_keeps_aggressive_position(self):
        analysis = _analysis(Strategy.AGGRESSIVE)
        assert apply_regime(analysis, REGIME_ADJUSTMENTS[MarketRegime.VOLATILE]) == analysis

    def test_bull_upgrades_confident_conservative(self):
        analysis = _analysis(
            Strategy.HOLD, days_until_due=45, risk_score=65, payment_probability=80,
        ).model_copy(update={"confidence": 85})
        result = apply_regime(analysis, REGIME_ADJUSTMENTS[MarketRegime.BULL])
        assert result.recommended_strategy == Strategy.AGGRESSIVE
        assert result.should_act is True
        assert result.pre_override_strategy == Strategy.CONSERVATIVE
        assert TAG_BULL_UPGRADE in result.adjustments

    def test_bull_skips_low_confidence(self):
        analysis = _analysis(Strategy.HOLD, days_until_due=45, risk_score=65, payment_probability=80)
        assert analysis.confidence == 75
        result = apply_regime(analysis, REGIME_ADJUSTMENTS[MarketRegime.BULL])
        assert result.recommended_strategy == Strategy.CONSERVATIVE

    def test_bull_skipped_after_warning(self):
        conditions, alert = _alert(-6)
        result = adjust(
            _analysis(Strategy.HOLD), conditions, alert,
            REGIME_ADJUSTMENTS[MarketRegime.BULL],
        )
        assert result.recommended_strategy == Strategy.CONSERVATIVE
        assert TAG_BULL_UPGRADE not in result.adjustments

    def test_neutral_is_noop(self):
        analysis = _analysis(Strategy.HOLD)
        assert apply_regime(analysis, REGIME_ADJUSTMENTS[MarketRegime.NEUTRAL]) == analysis


# ---------------------------------------------------------------------------
# adjust
# ---------------------------------------------------------------------------

class TestAdjust:
    def test_idempotent(self):
        conditions, alert = _alert(-12)
        bear = REGIME_ADJUSTMENTS[MarketRegime.BEAR]
        once = adjust(_analysis(Strategy.AGGRESSIVE), conditions, alert, bear)
        twice = adjust(once, conditions, alert, bear)
        assert twice == once

    def test_idempotent_warning_and_regime(self):
        conditions, alert = _alert(-6)
        bear = REGIME_ADJUSTMENTS[MarketRegime.BEAR]
        once = adjust(_analysis(Strategy.HOLD), conditions, alert, bear)
        assert adjust(once, conditions, alert, bear) == once

    @pytest.mark.parametrize("change", [-6, -12])
    @pytest.mark.parametrize("regime", [MarketRegime.BEAR, MarketRegime.VOLATILE])
    @pytest.mark.parametrize("current", list(Strategy))
    @pytest.mark.parametrize("days", [-5, 10, 45])
    def test_market_stress_never_raises_recommendation(self, change, regime, current, days):
        base = _analysis(current, days_until_due=days)
        conditions, alert = _alert(change)
        result = adjust(base, conditions, alert, REGIME_ADJUSTMENTS[regime])
        assert result.recommended_strategy <= base.recommended_strategy

    def test_volatility_note_added_once(self):
        conditions = make_conditions(-12)
        result = adjust(_analysis(Strategy.HOLD), conditions, check_alert(conditions))
        assert TAG_VOLATILITY in result.adjustments
        assert result.adjustments.count(TAG_VOLATILITY) == 1

    def test_calm_market_passthrough(self):
        analysis = _analysis(Strategy.HOLD)
        result = adjust(analysis, make_conditions(0.5), None, REGIME_ADJUSTMENTS[MarketRegime.NEUTRAL])
        assert result == analysis
        assert result.market_override is False

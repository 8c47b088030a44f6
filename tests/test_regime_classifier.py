"""Tests for RegimeClassifier — raw signals, hysteresis, stats."""

from agents.market.regime import REGIME_ADJUSTMENTS, RegimeClassifier
from core.models import MarketRegime
from tests.conftest import FakeClock, make_conditions


def _feed(classifier: RegimeClassifier, clock: FakeClock, changes, prices=None):
    """Feed one observation per change, five minutes apart. Returns regimes seen."""
    seen = []
    for i, change in enumerate(changes):
        price = prices[i] if prices else 3_000.0
        clock.advance(300)
        seen.append(classifier.update_regime(make_conditions(change, eth_price=price)))
    return seen


class TestRawSignals:
    def test_neutral_below_min_observations(self):
        clock = FakeClock()
        classifier = RegimeClassifier(clock=clock)
        seen = _feed(classifier, clock, [-12.0] * 9)
        assert set(seen) == {MarketRegime.NEUTRAL}
        assert classifier.stats().candidate_regime is None

    def test_volatile(self):
        clock = FakeClock()
        classifier = RegimeClassifier(clock=clock)
        _feed(classifier, clock, [-12.0] * 12)
        assert classifier.current_regime() == MarketRegime.VOLATILE
        assert classifier.adjustment() == REGIME_ADJUSTMENTS[MarketRegime.VOLATILE]

    def test_bear(self):
        clock = FakeClock()
        classifier = RegimeClassifier(clock=clock)
        prices = [3_000.0 - 20 * i for i in range(12)]
        _feed(classifier, clock, [-3.0] * 12, prices)
        assert classifier.current_regime() == MarketRegime.BEAR

    def test_bull(self):
        clock = FakeClock()
        classifier = RegimeClassifier(clock=clock)
        prices = [3_000.0 + 20 * i for i in range(12)]
        _feed(classifier, clock, [3.0] * 12, prices)
        assert classifier.current_regime() == MarketRegime.BULL

    def test_falling_change_with_flat_price_is_neutral(self):
        clock = FakeClock()
        classifier = RegimeClassifier(clock=clock)
        _feed(classifier, clock, [-3.0] * 15)
        assert classifier.current_regime() == MarketRegime.NEUTRAL


class TestHysteresis:
    def test_needs_three_confirmations(self):
        clock = FakeClock()
        classifier = RegimeClassifier(clock=clock)
        seen = _feed(classifier, clock, [-12.0] * 12)
        # raw signal turns volatile at the 10th observation
        assert seen[9] == MarketRegime.NEUTRAL
        assert seen[10] == MarketRegime.NEUTRAL
        assert seen[11] == MarketRegime.VOLATILE

    def test_candidate_streak_tracked(self):
        clock = FakeClock()
        classifier = RegimeClassifier(clock=clock)
        _feed(classifier, clock, [-12.0] * 11)
        stats = classifier.stats()
        assert stats.current_regime == MarketRegime.NEUTRAL
        assert stats.candidate_regime == MarketRegime.VOLATILE
        assert stats.candidate_streak == 2

    def test_single_outlier_does_not_flip(self):
        clock = FakeClock()
        classifier = RegimeClassifier(clock=clock, lookback=1, min_observations=1)
        seen = _feed(classifier, clock, [0.0, -12.0, 0.0, -12.0, 0.0])
        assert set(seen) == {MarketRegime.NEUTRAL}

    def test_last_change_recorded(self):
        clock = FakeClock()
        classifier = RegimeClassifier(clock=clock)
        _feed(classifier, clock, [-12.0] * 12)
        stats = classifier.stats()
        assert stats.last_change == clock.now
        assert stats.last_update == clock.now


class TestStats:
    def test_stats_fields(self):
        clock = FakeClock()
        classifier = RegimeClassifier(clock=clock)
        _feed(classifier, clock, [-12.0] * 10)
        stats = classifier.stats()
        assert stats.observations == 10
        assert stats.avg_price_change == -12.0
        assert stats.high_volatility_ratio == 1.0
        assert stats.adjustment.regime == MarketRegime.NEUTRAL

    def test_history_bounded(self):
        clock = FakeClock()
        classifier = RegimeClassifier(history_size=5, min_observations=1, clock=clock)
        _feed(classifier, clock, [0.0] * 8)
        assert classifier.stats().observations == 5

    def test_adjustment_table(self):
        bull = REGIME_ADJUSTMENTS[MarketRegime.BULL]
        bear = REGIME_ADJUSTMENTS[MarketRegime.BEAR]
        assert bull.aggressive_multiplier > 1 > bear.aggressive_multiplier
        assert REGIME_ADJUSTMENTS[MarketRegime.NEUTRAL].aggressive_multiplier == 1.0

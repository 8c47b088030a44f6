"""
RegimeClassifier — coarse market regime with hysteresis.

Every ``update_regime`` records one observation (window price change,
volatility tier, ETH price) and derives a raw signal from the most recent
``lookback`` observations:

  volatile   more than ``volatile_ratio`` of them in the high/extreme tiers
  bull       mean Δ > +trend_change_pct, half-window price trend > +trend_slope_pct,
             high-volatility share below ``bull_max_volatile_ratio``
  bear       mean Δ < −trend_change_pct, half-window price trend < −trend_slope_pct
  neutral    otherwise, or fewer than ``min_observations`` observations

The current regime only switches after ``confirmations`` consecutive raw
signals agree on a different regime.
"""

from __future__ import annotations

import time
from collections import deque
from typing import Any, NamedTuple

import numpy as np

from core.logger import get_logger
from core.models import (
    MarketConditions,
    MarketRegime,
    RegimeAdjustment,
    RegimeStats,
    VolatilityLevel,
)

_HIGH_TIERS = (VolatilityLevel.HIGH, VolatilityLevel.EXTREME)

REGIME_ADJUSTMENTS: dict[MarketRegime, RegimeAdjustment] = {
    MarketRegime.BULL: RegimeAdjustment(
        regime=MarketRegime.BULL,
        aggressive_multiplier=1.2,
        conservative_multiplier=1.0,
        hold_multiplier=0.8,
        description="Bull market: favoring yield strategies for strong invoices",
    ),
    MarketRegime.BEAR: RegimeAdjustment(
        regime=MarketRegime.BEAR,
        aggressive_multiplier=0.6,
        conservative_multiplier=1.1,
        hold_multiplier=1.3,
        description="Bear market: reducing risk exposure, favoring capital protection",
    ),
    MarketRegime.VOLATILE: RegimeAdjustment(
        regime=MarketRegime.VOLATILE,
        aggressive_multiplier=0.5,
        conservative_multiplier=0.9,
        hold_multiplier=1.4,
        description="Volatile market: prioritizing stability over yield",
    ),
    MarketRegime.NEUTRAL: RegimeAdjustment(
        regime=MarketRegime.NEUTRAL,
        description="Neutral market: standard risk-adjusted strategy selection",
    ),
}


class _Observation(NamedTuple):
    timestamp: float
    price_change: float
    high_volatility: bool
    price: float | None


class RegimeClassifier:
    """Tracks observations and exposes the hysteresis-filtered regime."""

    def __init__(
        self,
        history_size: int = 288,
        lookback: int = 20,
        min_observations: int = 10,
        confirmations: int = 3,
        trend_change_pct: float = 2.0,
        trend_slope_pct: float = 0.5,
        volatile_ratio: float = 0.5,
        bull_max_volatile_ratio: float = 0.3,
        clock: Any = time.time,
    ) -> None:
        self.lookback = lookback
        self.min_observations = min_observations
        self.confirmations = confirmations
        self.trend_change_pct = trend_change_pct
        self.trend_slope_pct = trend_slope_pct
        self.volatile_ratio = volatile_ratio
        self.bull_max_volatile_ratio = bull_max_volatile_ratio
        self._clock = clock
        self._history: deque[_Observation] = deque(maxlen=history_size)

        self._current = MarketRegime.NEUTRAL
        self._candidate: MarketRegime | None = None
        self._streak = 0
        self._last_change = clock()
        self._last_update = 0.0

        # Last computed statistics, for stats().
        self._avg_change = 0.0
        self._trend = 0.0
        self._high_ratio = 0.0
        self.log = get_logger("regime_classifier")

    @classmethod
    def from_settings(cls, cfg: Any, **kw: Any) -> RegimeClassifier:
        return cls(
            history_size=cfg.regime_history_size,
            lookback=cfg.regime_lookback,
            min_observations=cfg.regime_min_observations,
            confirmations=cfg.regime_confirmations,
            trend_change_pct=cfg.regime_trend_change_pct,
            trend_slope_pct=cfg.regime_trend_slope_pct,
            volatile_ratio=cfg.regime_volatile_ratio,
            bull_max_volatile_ratio=cfg.regime_bull_max_volatile_ratio,
            **kw,
        )

    # -- classification ------------------------------------------------------

    def update_regime(self, conditions: MarketConditions, now: float | None = None) -> MarketRegime:
        """Record *conditions* and return the (possibly unchanged) current regime."""
        now = self._clock() if now is None else now
        self._history.append(_Observation(
            timestamp=now,
            price_change=conditions.eth_price_change_24h,
            high_volatility=conditions.volatility_level in _HIGH_TIERS,
            price=conditions.eth_price,
        ))
        self._last_update = now

        raw = self._raw_signal()
        if raw == self._current:
            self._candidate = None
            self._streak = 0
            return self._current

        if raw == self._candidate:
            self._streak += 1
        else:
            self._candidate = raw
            self._streak = 1

        if self._streak >= self.confirmations:
            previous = self._current
            self._current = raw
            self._candidate = None
            self._streak = 0
            self._last_change = now
            self.log.info(
                "REGIME CHANGE: %s → %s", previous, raw, extra={"regime": str(raw)},
            )
        return self._current

    def _raw_signal(self) -> MarketRegime:
        if len(self._history) < self.min_observations:
            return MarketRegime.NEUTRAL

        recent = list(self._history)[-self.lookback:]
        changes = np.array([o.price_change for o in recent], dtype=float)
        high = np.array([o.high_volatility for o in recent], dtype=float)

        self._avg_change = float(np.mean(changes))
        self._high_ratio = float(np.mean(high))
        self._trend = self._half_window_trend(recent)

        if self._high_ratio > self.volatile_ratio:
            return MarketRegime.VOLATILE
        if (
            self._avg_change > self.trend_change_pct
            and self._trend > self.trend_slope_pct
            and self._high_ratio < self.bull_max_volatile_ratio
        ):
            return MarketRegime.BULL
        if self._avg_change < -self.trend_change_pct and self._trend < -self.trend_slope_pct:
            return MarketRegime.BEAR
        return MarketRegime.NEUTRAL

    @staticmethod
    def _half_window_trend(recent: list[_Observation]) -> float:
        """Percent change between the mean price of the older and newer halves."""
        prices = np.array([o.price for o in recent if o.price is not None], dtype=float)
        if len(prices) < 2:
            return 0.0
        mid = len(prices) // 2
        older = float(np.mean(prices[:mid]))
        newer = float(np.mean(prices[mid:]))
        if older == 0:
            return 0.0
        return (newer - older) / older * 100

    # -- accessors -----------------------------------------------------------

    def current_regime(self) -> MarketRegime:
        return self._current

    def adjustment(self) -> RegimeAdjustment:
        return REGIME_ADJUSTMENTS[self._current]

    def stats(self) -> RegimeStats:
        return RegimeStats(
            current_regime=self._current,
            candidate_regime=self._candidate,
            candidate_streak=self._streak,
            observations=len(self._history),
            last_change=self._last_change,
            last_update=self._last_update,
            avg_price_change=round(self._avg_change, 4),
            trend_pct=round(self._trend, 4),
            high_volatility_ratio=round(self._high_ratio, 4),
            adjustment=self.adjustment(),
        )

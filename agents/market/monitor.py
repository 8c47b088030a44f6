"""
MarketMonitor — sliding price window, volatility tier and market alerts.

Every ``observe`` fetches ETH (and MNT) prices, appends a sample when a real
ETH price is available, and prunes samples older than the retention window
(4h).  The price change is measured first-to-last over whatever remains in
the window.

  |Δ| < 2%  low     |Δ| < 5%  medium     |Δ| < 10%  high     else extreme

Alerts:

  |Δ| < 3%    none
  Δ <= −8%    critical  (crash)
  Δ <= −5%    warning   (drop)
  Δ <= −3%    info      (volatility)
  Δ >= +5%    info      (rally)
"""

from __future__ import annotations

import time
from collections import deque
from typing import Any

from agents.market.prices import PriceSource
from core.errors import UnavailableDataError
from core.logger import get_logger
from core.models import (
    AlertLevel,
    MarketAlert,
    MarketConditions,
    PriceSample,
    VolatilityLevel,
)

PRIMARY_ASSET = "ETH"
SECONDARY_ASSET = "MNT"

_DEFAULT_RETENTION_SECS = 4 * 3600
_DEFAULT_BASE_PRICE = 3_000.0
_SHOCK_STEPS = 8


def volatility_tier(price_change: float) -> VolatilityLevel:
    magnitude = abs(price_change)
    if magnitude < 2:
        return VolatilityLevel.LOW
    if magnitude < 5:
        return VolatilityLevel.MEDIUM
    if magnitude < 10:
        return VolatilityLevel.HIGH
    return VolatilityLevel.EXTREME


def check_alert(conditions: MarketConditions) -> MarketAlert | None:
    """Derive the alert (if any) implied by *conditions*."""
    change = conditions.eth_price_change_24h
    if abs(change) < 3:
        return None
    if change <= -8:
        return MarketAlert(
            level=AlertLevel.CRITICAL,
            message=f"ETH price crashed {abs(change):.1f}% - extreme market stress",
            price_change=change,
            recommendation="Move positions to Hold to protect capital",
        )
    if change <= -5:
        return MarketAlert(
            level=AlertLevel.WARNING,
            message=f"ETH price dropped {abs(change):.1f}% - elevated market risk",
            price_change=change,
            recommendation="Reduce Aggressive positions to Conservative",
        )
    if change <= -3:
        return MarketAlert(
            level=AlertLevel.INFO,
            message=f"Market volatility detected ({change:.1f}%) - monitoring closely",
            price_change=change,
            recommendation="Maintain current strategies with increased monitoring",
        )
    if change >= 5:
        return MarketAlert(
            level=AlertLevel.INFO,
            message=f"ETH rally of +{change:.1f}% - favorable market conditions",
            price_change=change,
            recommendation="Conditions may support yield strategies for strong invoices",
        )
    return None


class MarketMonitor:
    """Owns the price window and the (mutable) current MarketConditions."""

    def __init__(
        self,
        price_source: PriceSource,
        retention_secs: float = _DEFAULT_RETENTION_SECS,
        clock: Any = time.time,
    ) -> None:
        self._source = price_source
        self.retention_secs = retention_secs
        self._clock = clock
        self._window: deque[PriceSample] = deque()
        self.conditions = MarketConditions()
        self.log = get_logger("market_monitor")

    # -- observation ---------------------------------------------------------

    async def _fetch(self, asset: str) -> float | None:
        try:
            return await self._source.get_price(asset)
        except UnavailableDataError as exc:
            self.log.warning("Price unavailable for %s: %s", asset, exc)
            return None
        except Exception as exc:
            self.log.warning(
                "Price source error for %s; treating as unavailable.", asset,
                extra={"error": str(exc)},
            )
            return None

    async def observe(self, now: float | None = None) -> MarketConditions:
        """Fetch prices, update the window and recompute conditions in place."""
        now = self._clock() if now is None else now
        eth = await self._fetch(PRIMARY_ASSET)
        mnt = await self._fetch(SECONDARY_ASSET)

        # A synthetic shock owns the window until reset() or until it ages out.
        if eth is not None and not self.conditions.simulated:
            prices = {PRIMARY_ASSET: eth}
            if mnt is not None:
                prices[SECONDARY_ASSET] = mnt
            self._window.append(PriceSample(timestamp=now, prices=prices))

        self._prune(now)
        if not self._window:
            self.conditions.simulated = False

        self._recompute(now, live_eth=eth, live_mnt=mnt)
        return self.conditions

    def _prune(self, now: float) -> None:
        cutoff = now - self.retention_secs
        while self._window and self._window[0].timestamp < cutoff:
            self._window.popleft()

    def _recompute(self, now: float, live_eth: float | None, live_mnt: float | None) -> None:
        c = self.conditions
        c.eth_price_change_24h = self.price_change()
        c.volatility_level = volatility_tier(c.eth_price_change_24h)
        latest = self._window[-1].prices if self._window else {}
        if c.simulated:
            c.eth_price = latest.get(PRIMARY_ASSET)
        else:
            c.eth_price = live_eth
        c.mnt_price = live_mnt if live_mnt is not None else latest.get(SECONDARY_ASSET)
        c.sample_count = len(self._window)
        c.last_updated = now

    def price_change(self) -> float:
        """Percentage change between the oldest and newest retained ETH price."""
        if len(self._window) < 2:
            return 0.0
        oldest = self._window[0].prices.get(PRIMARY_ASSET)
        latest = self._window[-1].prices.get(PRIMARY_ASSET)
        if not oldest or latest is None:
            return 0.0
        return round((latest - oldest) / oldest * 100, 4)

    def current_alert(self) -> MarketAlert | None:
        return check_alert(self.conditions)

    # -- demo hooks ----------------------------------------------------------

    def simulate_shock(self, percentage: float, now: float | None = None) -> MarketConditions:
        """Replace the window with a synthetic 4h move of −*percentage* percent.

        Positive values simulate a crash (descending prices), negative values
        a rally.
        """
        now = self._clock() if now is None else now
        base = self.conditions.eth_price or (
            self._window[-1].prices.get(PRIMARY_ASSET) if self._window else None
        ) or _DEFAULT_BASE_PRICE
        target = base * (1 - percentage / 100)

        # Oldest sample sits just inside the retention boundary.
        span = self.retention_secs - 60
        start = now - span
        self._window.clear()
        for i in range(_SHOCK_STEPS + 1):
            frac = i / _SHOCK_STEPS
            self._window.append(PriceSample(
                timestamp=start + span * frac,
                prices={PRIMARY_ASSET: base + (target - base) * frac},
            ))

        self.conditions.simulated = True
        self._recompute(now, live_eth=None, live_mnt=self.conditions.mnt_price)
        self.log.warning(
            "Simulated market shock: %.1f%% over %.1fh",
            -percentage, self.retention_secs / 3600,
        )
        return self.conditions

    def reset(self) -> MarketConditions:
        """Drop all samples and leave simulated mode."""
        self._window.clear()
        self.conditions = MarketConditions(last_updated=self._clock())
        self.log.info("Market monitor reset.")
        return self.conditions

    async def aclose(self) -> None:
        """Release the price source's connections."""
        await self._source.aclose()

    # -- introspection -------------------------------------------------------

    @property
    def window(self) -> list[PriceSample]:
        return list(self._window)

    def health(self) -> dict[str, Any]:
        return {
            "samples": len(self._window),
            "simulated": self.conditions.simulated,
            "eth_price": self.conditions.eth_price,
            "price_change": self.conditions.eth_price_change_24h,
            "volatility": self.conditions.volatility_level,
        }

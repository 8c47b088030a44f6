"""
Price sources feeding the MarketMonitor.

Every source answers ``await get_price(asset) -> float | None``.  ``None``
means "no real price right now" and puts the monitor in simulated mode;
sources raise :class:`UnavailableDataError` for unreachable backends and the
monitor degrades that to ``None`` as well.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx

from core.errors import UnavailableDataError
from core.logger import get_logger

# CoinGecko ids for tracked assets.
_COINGECKO_IDS: dict[str, str] = {
    "ETH": "ethereum",
    "MNT": "mantle",
}


class PriceSource(Protocol):
    async def get_price(self, asset: str) -> float | None: ...
    async def aclose(self) -> None: ...


class StaticPriceSource:
    """Fixed prices (or none at all). Used for simulated mode and tests."""

    def __init__(self, prices: dict[str, float | None] | None = None) -> None:
        self._prices: dict[str, float | None] = dict(prices or {})

    def set_price(self, asset: str, price: float | None) -> None:
        self._prices[asset] = price

    async def get_price(self, asset: str) -> float | None:
        return self._prices.get(asset)

    async def aclose(self) -> None:
        pass


class LedgerPriceSource:
    """Reads the on-chain oracle through the ledger client."""

    def __init__(self, ledger: Any, feed_ids: dict[str, str]) -> None:
        self._ledger = ledger
        self._feed_ids = {asset: fid for asset, fid in feed_ids.items() if fid}

    async def get_price(self, asset: str) -> float | None:
        feed = self._feed_ids.get(asset)
        if feed is None:
            return None
        return await self._ledger.get_price(feed)

    async def aclose(self) -> None:
        # Nothing to release; the ledger client is shared with the engine.
        pass


class HttpPriceSource:
    """CoinGecko ``/simple/price`` over httpx."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        http: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self.log = get_logger("price_source")

    async def aclose(self) -> None:
        await self._http.aclose()

    async def get_price(self, asset: str) -> float | None:
        coin = _COINGECKO_IDS.get(asset)
        if coin is None:
            return None
        headers = {"x-cg-demo-api-key": self._api_key} if self._api_key else {}
        try:
            resp = await self._http.get(
                f"{self._base_url}/simple/price",
                params={"ids": coin, "vs_currencies": "usd"},
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise UnavailableDataError(f"{asset} price request failed: {exc}") from exc
        if resp.status_code == 429 or resp.status_code >= 500:
            raise UnavailableDataError(f"{asset} price source returned {resp.status_code}")
        resp.raise_for_status()
        price = resp.json().get(coin, {}).get("usd")
        return float(price) if price is not None else None

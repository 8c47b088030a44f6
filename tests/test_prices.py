"""Tests for the price sources."""

import httpx
import pytest

from agents.market.prices import HttpPriceSource, LedgerPriceSource, StaticPriceSource
from core.errors import UnavailableDataError


def _source(handler) -> HttpPriceSource:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpPriceSource("https://api.example.test/api/v3/", api_key="k", http=http)


class TestHttpPriceSource:
    async def test_parses_usd_price(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ethereum": {"usd": 3123.45}})

        source = _source(handler)
        assert await source.get_price("ETH") == 3123.45
        assert seen[0].url.path == "/api/v3/simple/price"
        assert seen[0].url.params["ids"] == "ethereum"
        assert seen[0].headers["x-cg-demo-api-key"] == "k"
        await source.aclose()

    async def test_missing_coin_is_none(self):
        source = _source(lambda request: httpx.Response(200, json={}))
        assert await source.get_price("MNT") is None

    async def test_unknown_asset_makes_no_request(self):
        def handler(request):
            raise AssertionError("unexpected request")

        assert await _source(handler).get_price("DOGE") is None

    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_throttle_and_server_errors(self, status):
        source = _source(lambda request: httpx.Response(status))
        with pytest.raises(UnavailableDataError):
            await source.get_price("ETH")

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(UnavailableDataError):
            await _source(handler).get_price("ETH")


class _Ledger:
    def __init__(self) -> None:
        self.feeds: list[str] = []

    async def get_price(self, feed_id: str) -> float | None:
        self.feeds.append(feed_id)
        return 2999.0


class TestLedgerPriceSource:
    async def test_routes_by_feed(self):
        ledger = _Ledger()
        source = LedgerPriceSource(ledger, {"ETH": "0xeth", "MNT": ""})
        assert await source.get_price("ETH") == 2999.0
        assert await source.get_price("MNT") is None
        assert ledger.feeds == ["0xeth"]


class TestStaticPriceSource:
    async def test_set_price(self):
        source = StaticPriceSource()
        assert await source.get_price("ETH") is None
        source.set_price("ETH", 10.0)
        assert await source.get_price("ETH") == 10.0

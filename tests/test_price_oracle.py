"""Tests for the CoinGecko price oracle."""

from decimal import Decimal

import httpx
import pytest

from creditsync.exceptions import PriceUnavailableError
from creditsync.pricing.oracle import PriceOracle

from conftest import make_price_transport


class CountingTransport(httpx.MockTransport):
    def __init__(self, prices):
        self.calls = 0

        def handler(request):
            self.calls += 1
            coingecko_id = request.url.params["ids"]
            return httpx.Response(200, json={coingecko_id: {"usd": prices[coingecko_id]}})

        super().__init__(handler)


class TestPriceOracle:
    """Tests for PriceOracle."""

    @pytest.mark.asyncio
    async def test_fetches_price(self):
        oracle = PriceOracle(transport=make_price_transport({"ethereum": 3000.5}))

        assert await oracle.get_price_usd("eth") == Decimal("3000.5")

    @pytest.mark.asyncio
    async def test_cache_within_ttl(self):
        transport = CountingTransport({"ethereum": 3000.0})
        oracle = PriceOracle(cache_ttl=60, transport=transport)

        await oracle.get_price_usd("ETH")
        await oracle.get_price_usd("ETH")

        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_refetch_after_ttl(self):
        transport = CountingTransport({"ethereum": 3000.0})
        oracle = PriceOracle(cache_ttl=0, transport=transport)

        await oracle.get_price_usd("ETH")
        await oracle.get_price_usd("ETH")

        assert transport.calls == 2

    @pytest.mark.asyncio
    async def test_stale_cache_on_failure(self):
        prices = {"ethereum": 3000.0}
        oracle = PriceOracle(cache_ttl=0, transport=make_price_transport(prices))
        await oracle.get_price_usd("ETH")

        prices["ethereum"] = None
        assert await oracle.get_price_usd("ETH") == Decimal("3000.0")

    @pytest.mark.asyncio
    async def test_invalid_price_uses_stale_cache(self):
        prices = {"ethereum": 3000.0}
        oracle = PriceOracle(cache_ttl=0, transport=make_price_transport(prices))
        await oracle.get_price_usd("ETH")

        prices["ethereum"] = 0
        assert await oracle.get_price_usd("ETH") == Decimal("3000.0")

    @pytest.mark.asyncio
    async def test_no_cache_raises(self):
        oracle = PriceOracle(transport=make_price_transport({"ethereum": None}))

        with pytest.raises(PriceUnavailableError):
            await oracle.get_price_usd("ETH")

    @pytest.mark.asyncio
    async def test_unsupported_asset(self):
        oracle = PriceOracle(transport=make_price_transport({}))

        with pytest.raises(PriceUnavailableError, match="Unsupported"):
            await oracle.get_price_usd("DOGE")

    @pytest.mark.asyncio
    async def test_usd_value_floors(self):
        oracle = PriceOracle(transport=make_price_transport({"ethereum": 1999.999}))

        assert await oracle.usd_value("ETH", Decimal("0.01")) == Decimal("19.99")

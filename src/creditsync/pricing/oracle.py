"""USD price oracle backed by CoinGecko.

Prices are cached per asset for `price_cache_ttl` seconds. When a refresh
fails the last known price is served with a warning.
"""

import logging
import time
from decimal import ROUND_DOWN, Decimal
from typing import Optional

import httpx

from creditsync.config import get_settings
from creditsync.exceptions import PriceUnavailableError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class PriceOracle:
    """Fetches and caches USD prices."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        price_ids: Optional[dict[str, str]] = None,
        cache_ttl: Optional[float] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.api_url = (api_url or settings.coingecko_api_url).rstrip("/")
        self.price_ids = {
            k.upper(): v for k, v in (price_ids or settings.asset_price_ids).items()
        }
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.price_cache_ttl
        self.timeout = timeout
        self._transport = transport
        # asset -> (price, fetched_at)
        self._price_cache: dict[str, tuple[Decimal, float]] = {}

    async def _fetch(self, coingecko_id: str) -> Optional[Decimal]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.get(
                f"{self.api_url}/simple/price",
                params={"ids": coingecko_id, "vs_currencies": "usd"},
            )
            response.raise_for_status()
            data = response.json()

        price = data.get(coingecko_id, {}).get("usd")
        if not isinstance(price, (int, float)) or price <= 0:
            logger.error(f"Invalid price for {coingecko_id} in response: {data}")
            return None
        return Decimal(str(price))

    async def get_price_usd(self, asset: str) -> Decimal:
        """Get the current USD price of one unit of `asset`.

        Raises:
            PriceUnavailableError: asset unsupported, or no fresh or cached price
        """
        key = asset.upper()
        now = time.time()

        cached = self._price_cache.get(key)
        if cached and now - cached[1] < self.cache_ttl:
            return cached[0]

        coingecko_id = self.price_ids.get(key)
        if not coingecko_id:
            raise PriceUnavailableError(f"Unsupported asset for price: {asset}")

        price: Optional[Decimal] = None
        try:
            price = await self._fetch(coingecko_id)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to fetch price for {key}: {e}")

        if price is not None:
            self._price_cache[key] = (price, now)
            logger.info(f"Fetched and cached price for {key}: ${price:.2f}")
            return price

        if cached:
            logger.warning(f"Using stale price for {key}")
            return cached[0]

        raise PriceUnavailableError(f"Could not fetch price for {key}")

    async def usd_value(self, asset: str, amount: Decimal) -> Decimal:
        """Value an amount in USD, floored to cents."""
        price = await self.get_price_usd(asset)
        return (amount * price).quantize(CENT, rounding=ROUND_DOWN)

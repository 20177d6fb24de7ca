"""Forex and crypto price feeds.

Forex rates come from Frankfurter (ECB reference rates, quoted per USD);
the CELO price comes from CoinGecko. When a feed is unreachable the last
good value or a fallback constant is used and the reading is flagged.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

import httpx

from celofx.chain.tokens import get_token

logger = logging.getLogger(__name__)

# Units of currency per 1 USD
FALLBACK_FOREX: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.926"),
    "BRL": Decimal("5.7"),
}
FALLBACK_CRYPTO_USD: dict[str, Decimal] = {"CELO": Decimal("0.08")}
COINGECKO_IDS = {"CELO": "celo"}


@dataclass
class PriceReading:
    value: Decimal
    source: str
    is_fallback: bool = False
    fetched_at: float = field(default_factory=time.time)


class PriceFeed(ABC):
    """Abstract price source."""

    @abstractmethod
    async def forex_rate(self, currency: str) -> PriceReading:
        """Units of ``currency`` per 1 USD."""
        pass

    @abstractmethod
    async def crypto_price(self, asset: str = "CELO") -> PriceReading:
        """USD price of a crypto asset."""
        pass

    async def reference_rate(self, from_token: str, to_token: str) -> PriceReading:
        """Fair off-chain rate: units of to_token per from_token."""
        from_ccy = get_token(from_token).currency
        to_ccy = get_token(to_token).currency
        if from_ccy == to_ccy:
            return PriceReading(Decimal("1"), "parity")
        from_rate = await self.forex_rate(from_ccy)
        to_rate = await self.forex_rate(to_ccy)
        return PriceReading(
            value=to_rate.value / from_rate.value,
            source=to_rate.source,
            is_fallback=from_rate.is_fallback or to_rate.is_fallback,
        )


class HttpPriceFeed(PriceFeed):
    """Price feed over public HTTP APIs with a short in-memory cache."""

    def __init__(
        self,
        forex_url: str = "https://api.frankfurter.dev/v1/latest",
        crypto_url: str = "https://api.coingecko.com/api/v3/simple/price",
        timeout: float = 5.0,
        cache_ttl: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.forex_url = forex_url
        self.crypto_url = crypto_url
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self._transport = transport
        self._cache: dict[str, PriceReading] = {}

    def _cached(self, key: str) -> Optional[PriceReading]:
        reading = self._cache.get(key)
        if reading and time.time() - reading.fetched_at < self.cache_ttl:
            return reading
        return None

    async def _get_json(self, url: str, params: dict) -> dict:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.get(url, params=params)
            response.raise_for_status()
            return response.json()

    async def forex_rate(self, currency: str) -> PriceReading:
        currency = currency.upper()
        if currency == "USD":
            return PriceReading(Decimal("1"), "parity")
        key = f"fx:{currency}"
        cached = self._cached(key)
        if cached:
            return cached

        try:
            data = await self._get_json(self.forex_url, {"base": "USD", "symbols": currency})
            reading = PriceReading(Decimal(str(data["rates"][currency])), "frankfurter")
            self._cache[key] = reading
            return reading
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.warning(f"Forex feed failed for {currency}: {e}")

        stale = self._cache.get(key)
        if stale:
            return PriceReading(stale.value, stale.source, is_fallback=True)
        if currency not in FALLBACK_FOREX:
            raise ValueError(f"No forex rate available for {currency}")
        return PriceReading(FALLBACK_FOREX[currency], "fallback", is_fallback=True)

    async def crypto_price(self, asset: str = "CELO") -> PriceReading:
        asset = asset.upper()
        key = f"crypto:{asset}"
        cached = self._cached(key)
        if cached:
            return cached

        coin_id = COINGECKO_IDS.get(asset, asset.lower())
        try:
            data = await self._get_json(self.crypto_url, {"ids": coin_id, "vs_currencies": "usd"})
            reading = PriceReading(Decimal(str(data[coin_id]["usd"])), "coingecko")
            self._cache[key] = reading
            return reading
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.warning(f"Crypto price feed failed for {asset}: {e}")

        if asset not in FALLBACK_CRYPTO_USD:
            raise ValueError(f"No price available for {asset}")
        return PriceReading(FALLBACK_CRYPTO_USD[asset], "fallback", is_fallback=True)

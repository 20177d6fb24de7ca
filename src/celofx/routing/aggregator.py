"""Concurrent venue quoting and profitability gating."""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from celofx.chain.client import ChainClient
from celofx.errors import NotProfitable, ValidationError
from celofx.providers.prices import PriceFeed
from celofx.routing.base import QuoteVenue, VenueQuote

logger = logging.getLogger(__name__)

WEI_PER_GWEI = Decimal(10) ** 9
WEI_PER_NATIVE = Decimal(10) ** 18


def spread_pct(rate_a: Decimal, rate_b: Decimal) -> Decimal:
    """Percentage by which rate_a exceeds rate_b."""
    if rate_b == 0:
        raise ValueError("Reference rate must be non-zero")
    return (rate_a - rate_b) / rate_b * 100


class QuoteAggregator:
    """Queries venues in parallel; a failing or slow venue is simply absent."""

    def __init__(self, venues: list[QuoteVenue], timeout: float = 8.0):
        self.venues = {venue.name: venue for venue in venues}
        self.timeout = timeout

    def get_venue(self, name: str) -> QuoteVenue:
        venue = self.venues.get(name)
        if venue is None:
            raise ValidationError(
                f"Unknown venue: {name}. Use one of: {', '.join(self.venues)}",
                code="INVALID_VENUE",
            )
        return venue

    async def _safe_quote(
        self, venue: QuoteVenue, from_token: str, to_token: str, amount: Decimal
    ) -> Optional[VenueQuote]:
        try:
            quote = await asyncio.wait_for(
                venue.get_quote(from_token, to_token, amount), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Quote from {venue.name} timed out after {self.timeout}s")
            return None
        except Exception as e:
            logger.warning(f"Quote from {venue.name} failed: {e}")
            return None
        logger.info(
            f"Quote from {venue.name}: {amount} {from_token} -> "
            f"{quote.amount_out} {to_token} (rate: {quote.rate:.6f})"
        )
        return quote

    async def get_quotes(
        self,
        from_token: str,
        to_token: str,
        amount: Decimal,
        venues: Optional[list[str]] = None,
    ) -> dict[str, Optional[VenueQuote]]:
        """Quote every venue (or the named subset) concurrently.

        Returns:
            Mapping of venue name to quote, None where the venue failed
        """
        selected = [self.get_venue(name) for name in venues] if venues else list(self.venues.values())
        results = await asyncio.gather(
            *(self._safe_quote(v, from_token, to_token, amount) for v in selected)
        )
        return {venue.name: quote for venue, quote in zip(selected, results)}

    async def best_quote(
        self, from_token: str, to_token: str, amount: Decimal
    ) -> Optional[VenueQuote]:
        """Highest-output quote among venues supporting the pair."""
        names = [v.name for v in self.venues.values() if v.supports_pair(from_token, to_token)]
        if not names:
            return None
        quotes = [q for q in (await self.get_quotes(from_token, to_token, amount, names)).values() if q]
        if not quotes:
            logger.warning(f"No quotes found for {amount} {from_token} -> {to_token}")
            return None
        return max(quotes, key=lambda q: q.amount_out)


@dataclass
class GasEstimate:
    gas_price_wei: int
    gas_units: int
    native_price_usd: Decimal

    @property
    def gas_price_gwei(self) -> Decimal:
        return Decimal(self.gas_price_wei) / WEI_PER_GWEI

    @property
    def cost_usd(self) -> Decimal:
        return Decimal(self.gas_price_wei * self.gas_units) / WEI_PER_NATIVE * self.native_price_usd


class GasOracle:
    """Prices the gas of an approve + swap in USD."""

    def __init__(self, chain: ChainClient, price_feed: PriceFeed, gas_units: int = 250_000):
        self.chain = chain
        self.price_feed = price_feed
        self.gas_units = gas_units

    async def estimate(self) -> Optional[GasEstimate]:
        """Current gas cost, or None when the chain or feed is unavailable."""
        try:
            gas_price = await self.chain.gas_price()
            native = await self.price_feed.crypto_price("CELO")
        except Exception as e:
            logger.warning(f"Gas estimate unavailable: {e}")
            return None
        return GasEstimate(gas_price, self.gas_units, native.value)


@dataclass
class ThresholdBreakdown:
    required_pct: Decimal
    base_floor_pct: Decimal
    gas_cost_pct: Decimal
    cost_floor_pct: Decimal
    abs_profit_floor_pct: Decimal

    def to_dict(self) -> dict:
        return {
            "requiredSpreadPct": float(self.required_pct),
            "baseFloorPct": float(self.base_floor_pct),
            "gasCostPct": float(self.gas_cost_pct),
            "costFloorPct": float(self.cost_floor_pct),
            "absProfitFloorPct": float(self.abs_profit_floor_pct),
        }


class ProfitabilityGate:
    """Rejects trades whose spread cannot pay for themselves.

    required = max(base_floor,
                   gas_cost_pct + slippage_buffer + safety_margin,
                   min_abs_profit_usd / notional * 100)
    """

    def __init__(
        self,
        base_floor_pct: float,
        slippage_buffer_pct: float = 0.02,
        safety_margin_pct: float = 0.02,
        min_abs_profit_usd: float = 0.03,
    ):
        self.base_floor_pct = Decimal(str(base_floor_pct))
        self.slippage_buffer_pct = Decimal(str(slippage_buffer_pct))
        self.safety_margin_pct = Decimal(str(safety_margin_pct))
        self.min_abs_profit_usd = Decimal(str(min_abs_profit_usd))

    def required_spread_pct(
        self, notional_usd: Decimal, gas_cost_usd: Decimal = Decimal("0")
    ) -> ThresholdBreakdown:
        if notional_usd <= 0:
            raise ValidationError("Notional must be positive", code="INVALID_AMOUNT")
        gas_cost_pct = gas_cost_usd / notional_usd * 100
        cost_floor = gas_cost_pct + self.slippage_buffer_pct + self.safety_margin_pct
        abs_floor = self.min_abs_profit_usd / notional_usd * 100
        return ThresholdBreakdown(
            required_pct=max(self.base_floor_pct, cost_floor, abs_floor),
            base_floor_pct=self.base_floor_pct,
            gas_cost_pct=gas_cost_pct,
            cost_floor_pct=cost_floor,
            abs_profit_floor_pct=abs_floor,
        )

    def check(
        self,
        spread: Decimal,
        notional_usd: Decimal,
        gas_cost_usd: Decimal = Decimal("0"),
        directional: bool = False,
    ) -> ThresholdBreakdown:
        """Pass silently or raise NotProfitable.

        Args:
            directional: Compare the signed spread, so a negative spread always
                fails. Used when only one direction of the trade is profitable.
        """
        breakdown = self.required_spread_pct(notional_usd, gas_cost_usd)
        measured = spread if directional else abs(spread)
        if measured < breakdown.required_pct:
            raise NotProfitable(
                f"Spread {float(spread):.4f}% is below the {float(breakdown.required_pct):.4f}% threshold",
                spread_pct=float(spread),
                threshold_pct=float(breakdown.required_pct),
                details={"threshold": breakdown.to_dict()},
                next_step="Wait for a wider spread or increase the amount",
            )
        return breakdown

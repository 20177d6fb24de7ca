"""Venue quoting and profitability gating.

Venues:
- Mento: Broker/BiPoolManager stable-asset exchange
- Uniswap: V3 pools via QuoterV2 and SwapRouter02
"""

from celofx.routing.aggregator import (
    GasEstimate,
    GasOracle,
    ProfitabilityGate,
    QuoteAggregator,
    ThresholdBreakdown,
    spread_pct,
)
from celofx.routing.base import QuoteVenue, SwapPlan, VenueQuote
from celofx.routing.mento import MentoVenue
from celofx.routing.uniswap import UniswapVenue

__all__ = [
    "GasEstimate",
    "GasOracle",
    "ProfitabilityGate",
    "QuoteAggregator",
    "ThresholdBreakdown",
    "spread_pct",
    "QuoteVenue",
    "SwapPlan",
    "VenueQuote",
    "MentoVenue",
    "UniswapVenue",
]

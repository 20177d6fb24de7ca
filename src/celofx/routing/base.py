"""Abstract quoting interface for on-chain swap venues."""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal

from celofx.chain.client import ChainCall

logger = logging.getLogger(__name__)


@dataclass
class VenueQuote:
    """A swap quote from a venue."""

    venue: str  # e.g., "mento", "uniswap"
    from_token: str
    to_token: str
    amount_in: Decimal
    amount_out: Decimal
    route_details: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def rate(self) -> Decimal:
        """Units of to_token received per unit of from_token."""
        if self.amount_in == 0:
            return Decimal("0")
        return self.amount_out / self.amount_in


@dataclass
class SwapPlan:
    """Approve + swap transactions for one quoted swap."""

    quote: VenueQuote
    approval: ChainCall
    swap: ChainCall
    min_amount_out: Decimal
    slippage_pct: int

    @property
    def calls(self) -> list[ChainCall]:
        return [self.approval, self.swap]

    def to_dict(self) -> dict:
        return {
            "venue": self.quote.venue,
            "fromToken": self.quote.from_token,
            "toToken": self.quote.to_token,
            "amountIn": str(self.quote.amount_in),
            "expectedOut": str(self.quote.amount_out),
            "minOut": str(self.min_amount_out),
            "rate": str(self.quote.rate),
            "slippagePct": self.slippage_pct,
        }


class QuoteVenue(ABC):
    """Abstract base class for swap venues."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Venue name identifier."""
        pass

    @property
    @abstractmethod
    def supported_tokens(self) -> list[str]:
        """List of supported token symbols."""
        pass

    @abstractmethod
    async def get_quote(self, from_token: str, to_token: str, amount: Decimal) -> VenueQuote:
        """
        Get a swap quote.

        Args:
            from_token: Source token symbol (e.g., "cUSD")
            to_token: Destination token symbol (e.g., "cEUR")
            amount: Amount of from_token to swap

        Raises:
            Exception: venue cannot quote the pair; the aggregator treats
                any failure as an absent quote
        """
        pass

    @abstractmethod
    async def build_swap(
        self,
        from_token: str,
        to_token: str,
        amount: Decimal,
        recipient: str,
        slippage_pct: int = 1,
    ) -> SwapPlan:
        """Quote and build approve + swap calldata paying out to ``recipient``."""
        pass

    def supports_pair(self, from_token: str, to_token: str) -> bool:
        tokens = self.supported_tokens
        return from_token in tokens and to_token in tokens


def apply_slippage(amount_out_units: int, slippage_pct: int) -> int:
    """Minimum acceptable output in base units."""
    return amount_out_units * (100 - slippage_pct) // 100

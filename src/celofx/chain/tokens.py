"""Celo stablecoins and contract addresses."""

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Optional

from celofx.errors import ValidationError


@dataclass(frozen=True)
class Token:
    symbol: str
    address: str
    decimals: int
    currency: str  # fiat currency the token tracks


TOKENS: dict[str, Token] = {
    "cUSD": Token("cUSD", "0x765DE816845861e75A25fCA122bb6898B8B1282a", 18, "USD"),
    "cEUR": Token("cEUR", "0xD8763CBa276a3738E6DE85b4b3bF5FDed6D6cA73", 18, "EUR"),
    "cREAL": Token("cREAL", "0xe8537a3d056DA446677B9E9d6c5dB704EaAb4787", 18, "BRL"),
    "USDC": Token("USDC", "0xcebA9300f2b948710d2653dD7B07f33A8B32118C", 6, "USD"),
    "USDT": Token("USDT", "0x48065fbBE25f71C9282ddf5e1cD6D6A887483D5e", 6, "USD"),
}

# Mento
BROKER_ADDRESS = "0x777A8255cA72412f0d706dc03C9D1987306B4CaD"
BIPOOL_MANAGER_ADDRESS = "0x22d9db95E6Ae61c104A7B6F6C78D7993B94ec901"

# Uniswap V3
UNISWAP_QUOTER_V2 = "0x82825d0554fA07f7FC52Ab63c961F330fdEFa8E8"
UNISWAP_SWAP_ROUTER_02 = "0x5615CDAb10dc425a742d643d949a7F474C01abc4"


def get_token(symbol: str, allowed: Optional[list[str]] = None) -> Token:
    """Look up a token, optionally restricted to a whitelist."""
    token = TOKENS.get(symbol)
    if token is None or (allowed is not None and symbol not in allowed):
        raise ValidationError(f"Unsupported token: {symbol}", code="INVALID_TOKEN")
    return token


def to_base_units(amount: Decimal, decimals: int, exact: bool = False) -> int:
    """Convert a decimal amount to integer base units.

    Args:
        exact: Reject amounts with more precision than the token carries
            instead of truncating
    """
    scaled = amount * (Decimal(10) ** decimals)
    integral = scaled.to_integral_value(rounding=ROUND_DOWN)
    if exact and integral != scaled:
        raise ValidationError(
            f"Amount {amount} has more than {decimals} decimal places", code="INVALID_AMOUNT"
        )
    return int(integral)


def from_base_units(value: int, decimals: int) -> Decimal:
    return Decimal(value) / (Decimal(10) ** decimals)

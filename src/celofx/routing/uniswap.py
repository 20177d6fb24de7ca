"""Uniswap V3 venue on Celo (QuoterV2 + SwapRouter02)."""

import logging
from decimal import Decimal

from web3 import Web3

from celofx.chain.abi import encode_call
from celofx.chain.client import ChainCall, ChainClient
from celofx.chain.tokens import (
    UNISWAP_QUOTER_V2,
    UNISWAP_SWAP_ROUTER_02,
    from_base_units,
    get_token,
    to_base_units,
)
from celofx.routing.base import QuoteVenue, SwapPlan, VenueQuote, apply_slippage

logger = logging.getLogger(__name__)

# Pools with usable liquidity: (token_a, token_b) -> fee tier
KNOWN_POOLS: dict[frozenset, int] = {
    frozenset({"USDT", "cUSD"}): 100,
    frozenset({"cEUR", "cUSD"}): 100,
}

QUOTE_SIGNATURE = "quoteExactInputSingle((address,address,uint256,uint24,uint160))"
SWAP_SIGNATURE = "exactInputSingle((address,address,uint24,address,uint256,uint256,uint160))"


def find_pool_fee(token_a: str, token_b: str) -> int:
    fee = KNOWN_POOLS.get(frozenset({token_a, token_b}))
    if fee is None:
        raise ValueError(f"No known Uniswap V3 pool for {token_a}/{token_b}")
    return fee


class UniswapVenue(QuoteVenue):
    """Uniswap V3 single-pool swaps."""

    def __init__(self, chain: ChainClient):
        self.chain = chain

    @property
    def name(self) -> str:
        return "uniswap"

    @property
    def supported_tokens(self) -> list[str]:
        return sorted({token for pool in KNOWN_POOLS for token in pool})

    async def get_quote(self, from_token: str, to_token: str, amount: Decimal) -> VenueQuote:
        token_in, token_out = get_token(from_token), get_token(to_token)
        fee = find_pool_fee(from_token, to_token)
        amount_units = to_base_units(amount, token_in.decimals)

        # QuoterV2 is non-view but stateless; eth_call simulates it.
        out_units, _, _, gas_estimate = await self.chain.read_contract(
            UNISWAP_QUOTER_V2,
            QUOTE_SIGNATURE,
            [
                (
                    Web3.to_checksum_address(token_in.address),
                    Web3.to_checksum_address(token_out.address),
                    amount_units,
                    fee,
                    0,
                )
            ],
            ["uint256", "uint160", "uint32", "uint256"],
        )
        return VenueQuote(
            venue=self.name,
            from_token=from_token,
            to_token=to_token,
            amount_in=amount,
            amount_out=from_base_units(out_units, token_out.decimals),
            route_details={"fee": fee, "amount_out_units": out_units, "gas_estimate": gas_estimate},
        )

    async def build_swap(
        self,
        from_token: str,
        to_token: str,
        amount: Decimal,
        recipient: str,
        slippage_pct: int = 1,
    ) -> SwapPlan:
        token_in, token_out = get_token(from_token), get_token(to_token)
        quote = await self.get_quote(from_token, to_token, amount)
        amount_units = to_base_units(amount, token_in.decimals)
        min_out_units = apply_slippage(quote.route_details["amount_out_units"], slippage_pct)

        approval = ChainCall(
            label="approve",
            to=token_in.address,
            data=encode_call(
                "approve(address,uint256)",
                [Web3.to_checksum_address(UNISWAP_SWAP_ROUTER_02), amount_units],
            ),
        )
        swap = ChainCall(
            label="swap",
            to=UNISWAP_SWAP_ROUTER_02,
            data=encode_call(
                SWAP_SIGNATURE,
                [
                    (
                        Web3.to_checksum_address(token_in.address),
                        Web3.to_checksum_address(token_out.address),
                        quote.route_details["fee"],
                        Web3.to_checksum_address(recipient),
                        amount_units,
                        min_out_units,
                        0,
                    )
                ],
            ),
        )
        return SwapPlan(
            quote=quote,
            approval=approval,
            swap=swap,
            min_amount_out=from_base_units(min_out_units, token_out.decimals),
            slippage_pct=slippage_pct,
        )

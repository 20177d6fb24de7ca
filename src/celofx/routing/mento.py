"""Mento Broker venue.

Quotes with ``Broker.getAmountOut`` and swaps with ``Broker.swapIn`` against
the BiPoolManager exchange that holds both tokens. The Broker pays the swap
output to the transaction sender.
"""

import logging
import time
from decimal import Decimal
from typing import Optional

from web3 import Web3

from celofx.chain.abi import encode_call
from celofx.chain.client import ChainCall, ChainClient
from celofx.chain.tokens import (
    BIPOOL_MANAGER_ADDRESS,
    BROKER_ADDRESS,
    TOKENS,
    from_base_units,
    get_token,
    to_base_units,
)
from celofx.routing.base import QuoteVenue, SwapPlan, VenueQuote, apply_slippage

logger = logging.getLogger(__name__)

EXCHANGE_CACHE_TTL = 300


class MentoVenue(QuoteVenue):
    """Mento protocol stable-asset exchange."""

    def __init__(self, chain: ChainClient):
        self.chain = chain
        self._exchanges: Optional[list[tuple[bytes, list[str]]]] = None
        self._exchanges_fetched_at = 0.0

    @property
    def name(self) -> str:
        return "mento"

    @property
    def supported_tokens(self) -> list[str]:
        return list(TOKENS)

    async def _get_exchanges(self) -> list[tuple[bytes, list[str]]]:
        if self._exchanges is not None and time.time() - self._exchanges_fetched_at < EXCHANGE_CACHE_TTL:
            return self._exchanges

        (exchanges,) = await self.chain.read_contract(
            BIPOOL_MANAGER_ADDRESS, "getExchanges()", [], ["(bytes32,address[])[]"]
        )
        self._exchanges = [(exchange_id, list(assets)) for exchange_id, assets in exchanges]
        self._exchanges_fetched_at = time.time()
        logger.debug(f"Loaded {len(self._exchanges)} Mento exchanges")
        return self._exchanges

    async def find_exchange_id(self, token_a: str, token_b: str) -> bytes:
        a, b = token_a.lower(), token_b.lower()
        for exchange_id, assets in await self._get_exchanges():
            lowered = [asset.lower() for asset in assets]
            if a in lowered and b in lowered:
                return exchange_id
        raise ValueError(f"No Mento exchange holds {token_a} and {token_b}")

    async def get_quote(self, from_token: str, to_token: str, amount: Decimal) -> VenueQuote:
        token_in, token_out = get_token(from_token), get_token(to_token)
        exchange_id = await self.find_exchange_id(token_in.address, token_out.address)
        amount_units = to_base_units(amount, token_in.decimals)

        (out_units,) = await self.chain.read_contract(
            BROKER_ADDRESS,
            "getAmountOut(address,bytes32,address,address,uint256)",
            [
                Web3.to_checksum_address(BIPOOL_MANAGER_ADDRESS),
                exchange_id,
                Web3.to_checksum_address(token_in.address),
                Web3.to_checksum_address(token_out.address),
                amount_units,
            ],
            ["uint256"],
        )
        return VenueQuote(
            venue=self.name,
            from_token=from_token,
            to_token=to_token,
            amount_in=amount,
            amount_out=from_base_units(out_units, token_out.decimals),
            route_details={"exchange_id": "0x" + exchange_id.hex(), "amount_out_units": out_units},
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
        exchange_id = bytes.fromhex(quote.route_details["exchange_id"][2:])
        amount_units = to_base_units(amount, token_in.decimals)
        min_out_units = apply_slippage(quote.route_details["amount_out_units"], slippage_pct)

        approval = ChainCall(
            label="approve",
            to=token_in.address,
            data=encode_call(
                "approve(address,uint256)",
                [Web3.to_checksum_address(BROKER_ADDRESS), amount_units],
            ),
        )
        swap = ChainCall(
            label="swap",
            to=BROKER_ADDRESS,
            data=encode_call(
                "swapIn(address,bytes32,address,address,uint256,uint256)",
                [
                    Web3.to_checksum_address(BIPOOL_MANAGER_ADDRESS),
                    exchange_id,
                    Web3.to_checksum_address(token_in.address),
                    Web3.to_checksum_address(token_out.address),
                    amount_units,
                    min_out_units,
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

"""Arbitrage and single-swap execution endpoints."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import Field

from celofx.api.pipeline import RequestModel, execute_request
from celofx.api.services import Services, get_services
from celofx.security.auth import LABEL_ARBITRAGE, LABEL_SWAP, Authorized


router = APIRouter(prefix="/api", tags=["Execution"])


class ArbitrageRequest(RequestModel):
    """Cross-venue arbitrage request."""

    pair: str
    amount: str  # Decimal as string
    buy_venue: Optional[str] = Field(default=None, alias="buyVenue")
    sell_venue: Optional[str] = Field(default=None, alias="sellVenue")


class SwapRequest(RequestModel):
    """Single swap against the forex reference rate."""

    from_token: str = Field(alias="fromToken")
    to_token: str = Field(alias="toToken")
    amount: str  # Decimal as string


@router.post("/arb/execute")
async def execute_arbitrage(request: Request, services: Services = Depends(get_services)):
    """Buy on one venue and sell back on the other."""

    async def run(authorized: Authorized, body: dict[str, Any]) -> dict:
        params = ArbitrageRequest.model_validate(body)
        return await services.arbitrage.execute(
            authorized, params.pair, params.amount, params.buy_venue, params.sell_venue
        )

    return await execute_request(
        request,
        services,
        scope="arb-execute",
        label=LABEL_ARBITRAGE,
        signer_field="requester",
        fields=["pair", "amount"],
        handler=run,
    )


@router.post("/swap/execute")
async def execute_swap(request: Request, services: Services = Depends(get_services)):
    """Swap when a venue pays more than the forex rate."""

    async def run(authorized: Authorized, body: dict[str, Any]) -> dict:
        params = SwapRequest.model_validate(body)
        return await services.swap.execute(
            authorized, params.from_token, params.to_token, params.amount
        )

    return await execute_request(
        request,
        services,
        scope="swap-execute",
        label=LABEL_SWAP,
        signer_field="requester",
        fields=["fromToken", "toToken", "amount"],
        handler=run,
    )

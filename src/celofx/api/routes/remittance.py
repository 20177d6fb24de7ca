"""Remittance execution endpoint."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import Field

from celofx.api.pipeline import RequestModel, execute_request
from celofx.api.services import Services, get_services
from celofx.security.auth import LABEL_REMITTANCE, Authorized

router = APIRouter(prefix="/api/remittance", tags=["Remittance"])


class RemittanceRequest(RequestModel):
    from_token: str = Field(alias="fromToken")
    to_token: str = Field(alias="toToken")
    amount: str  # Decimal as string
    recipient_address: str = Field(alias="recipientAddress")
    corridor: Optional[str] = None


@router.post("/execute")
async def execute_remittance(request: Request, services: Services = Depends(get_services)):
    """Optionally swap, then pay the recipient."""

    async def run(authorized: Authorized, body: dict[str, Any]) -> dict:
        params = RemittanceRequest.model_validate(body)
        return await services.remittance.execute(
            authorized,
            params.from_token,
            params.to_token,
            params.amount,
            params.recipient_address,
            params.corridor,
        )

    return await execute_request(
        request,
        services,
        scope="remittance-execute",
        label=LABEL_REMITTANCE,
        signer_field="requester",
        fields=["fromToken", "toToken", "amount", "recipientAddress"],
        handler=run,
    )

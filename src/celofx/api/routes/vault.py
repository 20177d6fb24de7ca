"""Vault endpoints: metrics and positions, deposits and withdrawals."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import Field

from celofx.api.pipeline import RequestModel, execute_request, read_json
from celofx.api.services import Services, get_services
from celofx.errors import ValidationError
from celofx.security.auth import LABEL_VAULT_DEPOSIT, LABEL_VAULT_WITHDRAW, Authorized

router = APIRouter(prefix="/api/vault", tags=["Vault"])


class DepositRequest(RequestModel):
    depositor: str
    amount: str  # Decimal as string
    tx_hash: str = Field(alias="txHash")


class WithdrawRequest(RequestModel):
    depositor: str
    deposit_id: str = Field(alias="depositId")


@router.get("")
async def get_vault(
    address: Optional[str] = Query(default=None),
    services: Services = Depends(get_services),
) -> dict:
    """Vault metrics, deposits and the position of ``address``."""
    return await services.vault.overview(address)


@router.post("")
async def post_vault(request: Request, services: Services = Depends(get_services)):
    """Deposit (with proof of payment) or withdraw."""
    body = await read_json(request)
    action = body.get("action")

    if action == "deposit":

        async def run(authorized: Authorized, body: dict[str, Any]) -> dict:
            params = DepositRequest.model_validate(body)
            return await services.vault.deposit(
                authorized, params.depositor, params.amount, params.tx_hash
            )

        return await execute_request(
            request,
            services,
            scope="vault-deposit",
            label=LABEL_VAULT_DEPOSIT,
            signer_field="depositor",
            fields=["amount", "txHash"],
            handler=run,
        )

    if action == "withdraw":

        async def run(authorized: Authorized, body: dict[str, Any]) -> dict:
            params = WithdrawRequest.model_validate(body)
            return await services.vault.withdraw(authorized, params.depositor, params.deposit_id)

        return await execute_request(
            request,
            services,
            scope="vault-withdraw",
            label=LABEL_VAULT_WITHDRAW,
            signer_field="depositor",
            fields=["depositId"],
            handler=run,
        )

    raise ValidationError("Invalid action. Use 'deposit' or 'withdraw'")

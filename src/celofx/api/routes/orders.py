"""FX order endpoints."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import Field

from celofx.api.pipeline import RequestModel, execute_request, read_json
from celofx.api.services import Services, get_services
from celofx.errors import ValidationError
from celofx.security.auth import LABEL_ORDER_CANCEL, LABEL_ORDER_CREATE, Authorized

router = APIRouter(prefix="/api/orders", tags=["Orders"])


class CreateOrderRequest(RequestModel):
    creator: str
    from_token: str = Field(alias="fromToken")
    to_token: str = Field(alias="toToken")
    amount_in: str = Field(alias="amountIn")
    target_rate: Optional[str] = Field(default=None, alias="targetRate")
    deadline_hours: Optional[str] = Field(default=None, alias="deadlineHours")
    condition_type: Optional[str] = Field(default=None, alias="conditionType")
    pct_change_threshold: Optional[str] = Field(default=None, alias="pctChangeThreshold")
    pct_change_timeframe: Optional[str] = Field(default=None, alias="pctChangeTimeframe")


class CancelOrderRequest(RequestModel):
    creator: str
    order_id: str = Field(alias="orderId")


@router.get("")
async def list_orders(
    status: Optional[str] = Query(default=None),
    creator: Optional[str] = Query(default=None),
    services: Services = Depends(get_services),
) -> dict:
    return await services.orders.list_orders(status=status, creator=creator)


@router.post("")
async def post_order(request: Request, services: Services = Depends(get_services)):
    """Create or cancel an order."""
    body = await read_json(request)
    action = body.get("action")

    if action == "create":

        async def run(authorized: Authorized, body: dict[str, Any]) -> dict:
            params = CreateOrderRequest.model_validate(body)
            return await services.orders.create(
                authorized,
                creator=params.creator,
                from_token=params.from_token,
                to_token=params.to_token,
                amount_in=params.amount_in,
                target_rate=params.target_rate,
                deadline_hours=params.deadline_hours,
                condition_type=params.condition_type,
                pct_change_threshold=params.pct_change_threshold,
                pct_change_timeframe=params.pct_change_timeframe,
            )

        return await execute_request(
            request,
            services,
            scope="order-create",
            label=LABEL_ORDER_CREATE,
            signer_field="creator",
            fields=["fromToken", "toToken", "amountIn", "targetRate"],
            handler=run,
            success_status=201,
        )

    if action == "cancel":

        async def run(authorized: Authorized, body: dict[str, Any]) -> dict:
            params = CancelOrderRequest.model_validate(body)
            return await services.orders.cancel(authorized, params.creator, params.order_id)

        return await execute_request(
            request,
            services,
            scope="order-cancel",
            label=LABEL_ORDER_CANCEL,
            signer_field="creator",
            fields=["orderId"],
            handler=run,
        )

    raise ValidationError("Invalid action. Use 'create' or 'cancel'")

"""Conditional FX orders: create, cancel and list."""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from celofx.chain.signing import is_address
from celofx.chain.tokens import TOKENS
from celofx.errors import Forbidden, NotFound, ValidationError
from celofx.execution.policy import parse_amount
from celofx.ledger.database import get_db
from celofx.ledger.models import FxOrder, OrderCondition, OrderStatus
from celofx.ledger.repository import LedgerRepository
from celofx.security.auth import Authorized

logger = logging.getLogger(__name__)

DEFAULT_DEADLINE_HOURS = 24
DEFAULT_PCT_CHANGE = Decimal("5")
DEFAULT_PCT_TIMEFRAME = "24h"
PCT_TIMEFRAMES = ("1h", "4h", "24h")


def order_to_dict(order: FxOrder) -> dict[str, Any]:
    return {
        "id": order.id,
        "creator": order.creator,
        "fromToken": order.from_token,
        "toToken": order.to_token,
        "amountIn": str(order.amount_in),
        "targetRate": str(order.target_rate) if order.target_rate is not None else None,
        "conditionType": order.condition_type,
        "pctChangeThreshold": (
            str(order.pct_change_threshold) if order.pct_change_threshold is not None else None
        ),
        "pctChangeTimeframe": order.pct_change_timeframe,
        "deadline": order.deadline.isoformat() if order.deadline else None,
        "status": order.status,
        "checksCount": order.checks_count,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
    }


def _positive(raw: Any, field_name: str, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if raw is None or raw == "":
        return default
    return parse_amount(raw, field_name)


class OrderService:
    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory

    async def create(
        self,
        authorized: Authorized,
        creator: str,
        from_token: str,
        to_token: str,
        amount_in: Any,
        target_rate: Any = None,
        deadline_hours: Any = None,
        condition_type: Optional[str] = None,
        pct_change_threshold: Any = None,
        pct_change_timeframe: Optional[str] = None,
    ) -> dict[str, Any]:
        if not creator or not from_token or not to_token or amount_in in (None, ""):
            raise ValidationError("Missing required fields")
        if not is_address(creator):
            raise ValidationError("creator must be a 0x address", code="INVALID_ADDRESS")
        if not authorized.is_agent and authorized.identity != creator.lower():
            raise Forbidden("Signer is not the order creator")

        try:
            condition = OrderCondition(condition_type or OrderCondition.RATE_REACHES.value)
        except ValueError:
            raise ValidationError(f"Invalid conditionType: {condition_type}")
        if from_token not in TOKENS or to_token not in TOKENS:
            raise ValidationError(
                f"Invalid token. Use one of: {', '.join(TOKENS)}", code="INVALID_TOKEN"
            )
        if from_token == to_token:
            raise ValidationError("From and to tokens must be different", code="INVALID_TOKEN")

        amount = parse_amount(amount_in, "amountIn")
        if condition is OrderCondition.RATE_REACHES and target_rate in (None, ""):
            raise ValidationError("Target rate required for rate-based alerts")
        rate = _positive(target_rate, "targetRate")
        hours = _positive(deadline_hours, "deadlineHours", Decimal(DEFAULT_DEADLINE_HOURS))

        fields: dict[str, Any] = {}
        if condition is OrderCondition.PCT_CHANGE:
            timeframe = pct_change_timeframe or DEFAULT_PCT_TIMEFRAME
            if timeframe not in PCT_TIMEFRAMES:
                raise ValidationError(f"pctChangeTimeframe must be one of: {', '.join(PCT_TIMEFRAMES)}")
            fields["pct_change_threshold"] = _positive(
                pct_change_threshold, "pctChangeThreshold", DEFAULT_PCT_CHANGE
            )
            fields["pct_change_timeframe"] = timeframe

        deadline = datetime.now(timezone.utc) + timedelta(hours=float(hours))
        async with get_db(self.session_factory) as session:
            order = await LedgerRepository(session).create_order(
                creator=creator.lower(),
                from_token=from_token,
                to_token=to_token,
                amount_in=amount,
                target_rate=rate,
                condition_type=condition.value,
                deadline=deadline,
                **fields,
            )
            payload = order_to_dict(order)
        logger.info(f"Order {payload['id']} created by {creator}: {amount} {from_token}->{to_token}")
        return {"order": payload}

    async def cancel(self, authorized: Authorized, creator: str, order_id: Any) -> dict[str, Any]:
        if not order_id or not creator:
            raise ValidationError("Missing orderId or creator")
        if not authorized.is_agent and authorized.identity != creator.lower():
            raise Forbidden("Signer is not the order creator")
        try:
            order_id = int(order_id)
        except (TypeError, ValueError):
            raise NotFound("Order not found")

        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            order = await repo.get_order(order_id)
            if order is None:
                raise NotFound("Order not found")
            if order.creator.lower() != creator.lower():
                raise Forbidden("Only the order creator can cancel")
            if order.status != OrderStatus.PENDING.value or not await repo.cancel_order(order_id):
                raise ValidationError(
                    f"Cannot cancel order with status: {order.status}", code="INVALID_STATE"
                )
            payload = order_to_dict(order)
        payload["status"] = OrderStatus.CANCELLED.value
        return {"order": payload}

    async def list_orders(
        self, status: Optional[str] = None, creator: Optional[str] = None
    ) -> dict[str, Any]:
        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            expired = await repo.expire_orders(datetime.now(timezone.utc))
            if expired:
                logger.info(f"Expired {expired} overdue order(s)")
            orders = await repo.list_orders(status=status, creator=creator)
            payload = [order_to_dict(o) for o in orders]
        return {"orders": payload, "count": len(payload)}

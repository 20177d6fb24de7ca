"""Shared plumbing for the execution services."""

import dataclasses
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from celofx.chain.client import ChainCall
from celofx.chain.tokens import Token, get_token
from celofx.config import Settings
from celofx.errors import TransientInfrastructureFailure, ValidationError
from celofx.execution.policy import ExecutionPolicy
from celofx.execution.wallets import WalletResolver
from celofx.ledger.database import get_db
from celofx.ledger.models import TradeKind
from celofx.ledger.repository import LedgerRepository
from celofx.notifications.dispatcher import OpsNotifier
from celofx.providers.prices import PriceFeed
from celofx.routing.aggregator import GasEstimate, GasOracle, QuoteAggregator

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    """Collaborators shared by every execution service."""

    settings: Settings
    aggregator: QuoteAggregator
    price_feed: PriceFeed
    gas_oracle: GasOracle
    wallets: WalletResolver
    policy: ExecutionPolicy
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    notifier: Optional[OpsNotifier] = None


def with_record(call: ChainCall, field_name: str) -> ChainCall:
    """Tag a call with the trade field its hash is stored in."""
    return dataclasses.replace(call, record_as=field_name)


def quote_failed(what: str) -> TransientInfrastructureFailure:
    return TransientInfrastructureFailure(
        f"Quote unavailable: {what}",
        code="QUOTE_FAILED",
        next_step="Retry with a fresh quote in a few seconds.",
    )


class ExecutionService:
    """Base class: token validation, notional pricing, trade records, notifications."""

    kind: TradeKind

    def __init__(self, ctx: ExecutionContext):
        self.ctx = ctx
        self.settings = ctx.settings

    def _tokens(self, from_token: str, to_token: str, allow_same: bool = False) -> tuple[Token, Token]:
        allowed = self.settings.allowed_token_list
        token_in = get_token(from_token, allowed)
        token_out = get_token(to_token, allowed)
        if from_token == to_token and not allow_same:
            raise ValidationError("fromToken and toToken must differ", code="INVALID_TOKEN")
        return token_in, token_out

    async def _notional_usd(self, token: Token, amount: Decimal) -> Decimal:
        rate = await self.ctx.price_feed.forex_rate(token.currency)
        return amount / rate.value

    async def pnl_in_vault_asset(self, token: Token, pnl: Decimal) -> Decimal:
        """Convert a PnL measured in ``token`` into the vault asset.

        Trade PnL is stored in the vault asset so the vault can sum it.
        """
        vault_asset = self.settings.vault_asset
        if token.symbol == vault_asset:
            return pnl
        rate = await self.ctx.price_feed.reference_rate(token.symbol, vault_asset)
        return pnl * rate.value

    async def _gas(self) -> Optional[GasEstimate]:
        return await self.ctx.gas_oracle.estimate()

    async def _create_trade(self, **fields) -> int:
        async with get_db(self.ctx.session_factory) as session:
            trade = await LedgerRepository(session).create_trade(kind=self.kind.value, **fields)
            return trade.id

    async def _confirm_trade(self, trade_id: int, **fields) -> None:
        async with get_db(self.ctx.session_factory) as session:
            if not await LedgerRepository(session).confirm_trade(trade_id, **fields):
                logger.error(f"Trade {trade_id} was already terminal when confirming")

    def _notify(self, event: str, payload: dict[str, Any]) -> None:
        if self.ctx.notifier:
            self.ctx.notifier.notify(event, payload)

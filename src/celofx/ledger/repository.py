"""Repository for ledger operations.

State transitions are conditional updates (``UPDATE ... WHERE status =``)
so a record can leave a state at most once even under concurrency.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from celofx.ledger.models import (
    DepositStatus,
    FxOrder,
    OrderStatus,
    Trade,
    TradeStatus,
    VaultDeposit,
)

TX_HASH_FIELDS = {
    "approval_tx_hash",
    "swap_tx_hash",
    "sell_approval_tx_hash",
    "sell_swap_tx_hash",
    "transfer_tx_hash",
}


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerRepository:
    """Repository for all ledger-related database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Trade operations
    async def create_trade(self, **fields) -> Trade:
        """Create a pending trade record."""
        trade = Trade(status=TradeStatus.PENDING.value, completed_legs=0, **fields)
        self.session.add(trade)
        await self.session.flush()
        return trade

    async def get_trade(self, trade_id: int) -> Optional[Trade]:
        stmt = select(Trade).where(Trade.id == trade_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def record_tx_hash(self, trade_id: int, field: str, tx_hash: Optional[str]) -> None:
        """Persist (or clear) a signed transaction hash on a pending trade."""
        if field not in TX_HASH_FIELDS:
            raise ValueError(f"Unknown transaction hash field: {field}")
        stmt = (
            update(Trade)
            .where(Trade.id == trade_id, Trade.status == TradeStatus.PENDING.value)
            .values({field: tx_hash})
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def record_leg_completed(self, trade_id: int, completed_legs: int) -> None:
        stmt = (
            update(Trade)
            .where(Trade.id == trade_id, Trade.status == TradeStatus.PENDING.value)
            .values(completed_legs=completed_legs)
        )
        await self.session.execute(stmt)

    async def confirm_trade(self, trade_id: int, **fields) -> bool:
        """Move a pending trade to confirmed.

        Returns:
            False if the trade was already terminal
        """
        stmt = (
            update(Trade)
            .where(Trade.id == trade_id, Trade.status == TradeStatus.PENDING.value)
            .values(status=TradeStatus.CONFIRMED.value, completed_at=_utcnow(), **fields)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def fail_trade(self, trade_id: int, error: str, completed_legs: int) -> bool:
        """Move a pending trade to failed, keeping any recorded hashes."""
        stmt = (
            update(Trade)
            .where(Trade.id == trade_id, Trade.status == TradeStatus.PENDING.value)
            .values(
                status=TradeStatus.FAILED.value,
                error=error[:2000],
                completed_legs=completed_legs,
                completed_at=_utcnow(),
            )
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def list_trades(self, limit: int = 50, kind: Optional[str] = None) -> list[Trade]:
        stmt = select(Trade).order_by(Trade.created_at.desc(), Trade.id.desc()).limit(limit)
        if kind:
            stmt = stmt.where(Trade.kind == kind)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def confirmed_pnl_total(self) -> Decimal:
        """Sum of absolute PnL over confirmed trades."""
        stmt = select(func.coalesce(func.sum(Trade.pnl), 0)).where(
            Trade.status == TradeStatus.CONFIRMED.value
        )
        result = await self.session.execute(stmt)
        return _decimal(result.scalar())

    async def volume_since(self, since: datetime) -> Decimal:
        """Notional of trades started since ``since`` that did not fail cleanly."""
        stmt = select(func.coalesce(func.sum(Trade.amount_in), 0)).where(
            Trade.created_at >= since,
            (Trade.status != TradeStatus.FAILED.value) | (Trade.completed_legs > 0),
        )
        result = await self.session.execute(stmt)
        return _decimal(result.scalar())

    # Vault deposit operations
    async def get_deposit(self, deposit_id: int) -> Optional[VaultDeposit]:
        stmt = select(VaultDeposit).where(VaultDeposit.id == deposit_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_deposit_by_tx(self, depositor: str, tx_hash: str) -> Optional[VaultDeposit]:
        stmt = select(VaultDeposit).where(
            VaultDeposit.depositor == depositor.lower(),
            VaultDeposit.tx_hash == tx_hash.lower(),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_deposit(
        self,
        depositor: str,
        amount: Decimal,
        shares_issued: Decimal,
        share_price: Decimal,
        tx_hash: str,
    ) -> VaultDeposit:
        deposit = VaultDeposit(
            depositor=depositor.lower(),
            amount=amount,
            shares_issued=shares_issued,
            share_price_at_entry=share_price,
            tx_hash=tx_hash.lower(),
            status=DepositStatus.ACTIVE.value,
        )
        self.session.add(deposit)
        await self.session.flush()
        return deposit

    async def list_deposits(
        self, depositor: Optional[str] = None, status: Optional[str] = None
    ) -> list[VaultDeposit]:
        stmt = select(VaultDeposit).order_by(VaultDeposit.id)
        if depositor:
            stmt = stmt.where(VaultDeposit.depositor == depositor.lower())
        if status:
            stmt = stmt.where(VaultDeposit.status == status)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def vault_totals(self) -> tuple[Decimal, Decimal, int]:
        """Active (total_deposited, total_shares, depositor_count)."""
        stmt = select(
            func.coalesce(func.sum(VaultDeposit.amount), 0),
            func.coalesce(func.sum(VaultDeposit.shares_issued), 0),
            func.count(func.distinct(VaultDeposit.depositor)),
        ).where(VaultDeposit.status == DepositStatus.ACTIVE.value)
        result = await self.session.execute(stmt)
        deposited, shares, depositors = result.one()
        return _decimal(deposited), _decimal(shares), int(depositors or 0)

    async def record_withdraw_submission(
        self, deposit_id: int, tx_hash: str, payout: Decimal
    ) -> bool:
        """Attach a payout transaction to an active deposit, at most once."""
        stmt = (
            update(VaultDeposit)
            .where(
                VaultDeposit.id == deposit_id,
                VaultDeposit.status == DepositStatus.ACTIVE.value,
                VaultDeposit.withdraw_tx_hash.is_(None),
            )
            .values(withdraw_tx_hash=tx_hash, payout_amount=payout)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def clear_withdraw_submission(self, deposit_id: int, tx_hash: str) -> bool:
        """Detach a payout transaction that reverted so the deposit can be withdrawn again."""
        stmt = (
            update(VaultDeposit)
            .where(
                VaultDeposit.id == deposit_id,
                VaultDeposit.status == DepositStatus.ACTIVE.value,
                VaultDeposit.withdraw_tx_hash == tx_hash,
            )
            .values(withdraw_tx_hash=None, payout_amount=None)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def mark_withdrawn(self, deposit_id: int) -> bool:
        stmt = (
            update(VaultDeposit)
            .where(
                VaultDeposit.id == deposit_id,
                VaultDeposit.status == DepositStatus.ACTIVE.value,
            )
            .values(status=DepositStatus.WITHDRAWN.value, withdrawn_at=_utcnow())
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    # FX order operations
    async def create_order(self, **fields) -> FxOrder:
        order = FxOrder(status=OrderStatus.PENDING.value, checks_count=0, **fields)
        self.session.add(order)
        await self.session.flush()
        return order

    async def get_order(self, order_id: int) -> Optional[FxOrder]:
        stmt = select(FxOrder).where(FxOrder.id == order_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_orders(
        self, status: Optional[str] = None, creator: Optional[str] = None
    ) -> list[FxOrder]:
        stmt = select(FxOrder).order_by(FxOrder.id.desc())
        if status:
            stmt = stmt.where(FxOrder.status == status)
        if creator:
            stmt = stmt.where(FxOrder.creator == creator.lower())
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def cancel_order(self, order_id: int) -> bool:
        stmt = (
            update(FxOrder)
            .where(FxOrder.id == order_id, FxOrder.status == OrderStatus.PENDING.value)
            .values(status=OrderStatus.CANCELLED.value)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def expire_orders(self, now: datetime) -> int:
        """Move pending orders past their deadline to expired."""
        stmt = (
            update(FxOrder)
            .where(FxOrder.status == OrderStatus.PENDING.value, FxOrder.deadline < now)
            .values(status=OrderStatus.EXPIRED.value)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

"""SQLAlchemy models for the execution ledger."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TradeKind(str, Enum):
    ARBITRAGE = "arbitrage"
    SWAP = "swap"
    REMITTANCE = "remittance"


class TradeStatus(str, Enum):
    """Status of an on-chain execution. Terminal states never change."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class DepositStatus(str, Enum):
    ACTIVE = "active"
    WITHDRAWN = "withdrawn"


class OrderStatus(str, Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class OrderCondition(str, Enum):
    RATE_REACHES = "rate_reaches"
    PCT_CHANGE = "pct_change"


class Trade(Base):
    """An arbitrage, swap or remittance execution.

    Transaction hashes are written as soon as each submission returns,
    before the receipt is awaited.
    """

    __tablename__ = "trades"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (Index("ix_trades_status_created", "status", "created_at"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    pair: Mapped[str] = mapped_column(String(30), nullable=False)
    from_token: Mapped[str] = mapped_column(String(20), nullable=False)
    to_token: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_in: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    amount_out: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)
    rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)
    spread_pct: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)
    # Absolute profit in vault-asset units; summed into the vault's PnL
    pnl: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=TradeStatus.PENDING.value)
    completed_legs: Mapped[int] = mapped_column(Integer, default=0)

    approval_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    swap_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    sell_approval_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    sell_swap_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    transfer_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    venue: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    recipient: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    requester: Mapped[str] = mapped_column(String(42), nullable=False)
    execution_wallet: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def tx_hashes(self) -> dict[str, str]:
        """All recorded transaction hashes by field name."""
        names = (
            "approval_tx_hash",
            "swap_tx_hash",
            "sell_approval_tx_hash",
            "sell_swap_tx_hash",
            "transfer_tx_hash",
        )
        return {n: getattr(self, n) for n in names if getattr(self, n)}


class VaultDeposit(Base):
    """A verified vault deposit and the shares issued for it."""

    __tablename__ = "vault_deposits"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        Index("ix_vault_deposits_depositor_tx", "depositor", "tx_hash", unique=True),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    depositor: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    shares_issued: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    share_price_at_entry: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=DepositStatus.ACTIVE.value)
    withdraw_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    payout_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    withdrawn_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class FxOrder(Base):
    """A conditional FX order awaiting its trigger."""

    __tablename__ = "fx_orders"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    creator: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    from_token: Mapped[str] = mapped_column(String(20), nullable=False)
    to_token: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_in: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    target_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)
    condition_type: Mapped[str] = mapped_column(
        String(20), default=OrderCondition.RATE_REACHES.value
    )
    pct_change_threshold: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(36, 18), nullable=True
    )
    pct_change_timeframe: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=OrderStatus.PENDING.value)
    checks_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

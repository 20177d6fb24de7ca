"""Ledger module for trades, vault deposits and FX orders."""

from celofx.ledger.database import get_db, init_db
from celofx.ledger.models import (
    DepositStatus,
    FxOrder,
    OrderCondition,
    OrderStatus,
    Trade,
    TradeKind,
    TradeStatus,
    VaultDeposit,
)
from celofx.ledger.repository import LedgerRepository

__all__ = [
    # Models
    "Trade",
    "VaultDeposit",
    "FxOrder",
    # Enums
    "TradeKind",
    "TradeStatus",
    "DepositStatus",
    "OrderStatus",
    "OrderCondition",
    # Database
    "get_db",
    "init_db",
    "LedgerRepository",
]

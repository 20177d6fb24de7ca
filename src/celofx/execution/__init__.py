"""On-chain execution: arbitrage, single swaps and remittances."""

from celofx.execution.arbitrage import ArbitrageService
from celofx.execution.base import ExecutionContext, ExecutionService
from celofx.execution.orchestrator import (
    ExecutionState,
    Leg,
    Stage,
    TransactionOrchestrator,
    is_retryable,
)
from celofx.execution.policy import ExecutionPolicy, parse_amount
from celofx.execution.remittance import RemittanceService
from celofx.execution.swap import SwapService
from celofx.execution.wallets import WalletResolver

__all__ = [
    "ArbitrageService",
    "ExecutionContext",
    "ExecutionPolicy",
    "ExecutionService",
    "ExecutionState",
    "Leg",
    "RemittanceService",
    "Stage",
    "SwapService",
    "TransactionOrchestrator",
    "WalletResolver",
    "is_retryable",
    "parse_amount",
]

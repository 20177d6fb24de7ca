"""Sequencing of dependent on-chain transactions.

A trade is executed as ordered legs (e.g. buy then sell, or swap then
transfer). Within a leg each call is submitted, its hash persisted on the
trade record, and its receipt awaited before the next call goes out. No
call is retried automatically: a retry could double-spend.

Failure outcomes:
- nothing confirmed yet: ExecutionFailed (or the infrastructure error
  itself when nothing was submitted)
- a later leg failed after earlier legs confirmed: PartialExecutionFailure
  naming the completed legs and their hashes
"""

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from celofx.chain.abi import TRANSFER_EVENT, decode_log
from celofx.chain.client import ChainCall, ChainClient, TxReceipt
from celofx.chain.tokens import Token, from_base_units
from celofx.errors import (
    BroadcastUncertain,
    CeloFXError,
    ExecutionFailed,
    PartialExecutionFailure,
)
from celofx.ledger.database import get_db
from celofx.ledger.repository import LedgerRepository

logger = logging.getLogger(__name__)

RETRYABLE_RE = re.compile(
    r"timeout|timed out|network|rpc|gateway|temporarily|rate limit|429|502|503|504|connection",
    re.IGNORECASE,
)


class Stage(str, Enum):
    QUOTING = "quoting"
    THRESHOLDING = "thresholding"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    FAILED = "failed"


def is_retryable(error: Exception) -> bool:
    """Classify a failure as transient by its message."""
    return RETRYABLE_RE.search(str(error)) is not None


def default_next_step(retryable: bool) -> str:
    if retryable:
        return "Retry with a fresh quote in a few seconds."
    return "Check spread, gas, and wallet funding before retrying."


@dataclass
class ExecutionState:
    """Progress of one trade through its legs."""

    trade_id: int
    wallet: str
    stage: Stage = Stage.SUBMITTING
    completed_legs: int = 0
    tx_hashes: dict[str, str] = field(default_factory=dict)
    receipts: dict[str, TxReceipt] = field(default_factory=dict)

    def receipt_for(self, key: str) -> Optional[TxReceipt]:
        return self.receipts.get(key)


@dataclass
class Leg:
    """An ordered group of calls that succeeds or fails as a unit.

    Either ``calls`` is given up front, or ``build`` produces them once the
    previous legs are confirmed (e.g. selling what the first leg bought).
    """

    name: str
    calls: list[ChainCall] = field(default_factory=list)
    build: Optional[Callable[[ExecutionState], Awaitable[list[ChainCall]]]] = None
    failure_code: str = "SWAP_FAILED"
    next_step: Optional[str] = None


def received_amount(receipt: TxReceipt, token: Token, wallet: str) -> Optional[Decimal]:
    """Sum of ``token`` Transfer events paying ``wallet`` in a receipt."""
    total = 0
    found = False
    for log in receipt.logs:
        if log.get("address", "").lower() != token.address.lower():
            continue
        decoded = decode_log(TRANSFER_EVENT, log)
        if decoded and decoded.args["to"].lower() == wallet.lower():
            total += decoded.args["value"]
            found = True
    return from_base_units(total, token.decimals) if found else None


class TransactionOrchestrator:
    """Runs legs against one signing chain client and records progress."""

    def __init__(
        self,
        chain: ChainClient,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.chain = chain
        self.session_factory = session_factory

    async def _record_hash(self, trade_id: int, field_name: str, tx_hash: Optional[str]) -> None:
        async with get_db(self.session_factory) as session:
            await LedgerRepository(session).record_tx_hash(trade_id, field_name, tx_hash)

    async def _record_leg(self, trade_id: int, completed_legs: int) -> None:
        async with get_db(self.session_factory) as session:
            await LedgerRepository(session).record_leg_completed(trade_id, completed_legs)

    async def _record_failure(self, state: ExecutionState, error: str) -> None:
        async with get_db(self.session_factory) as session:
            await LedgerRepository(session).fail_trade(state.trade_id, error, state.completed_legs)

    async def _run_call(self, state: ExecutionState, leg: Leg, call: ChainCall) -> TxReceipt:
        key = call.record_as or f"{leg.name}_{call.label}"
        state.stage = Stage.SUBMITTING

        async def persist(signed_hash: str) -> None:
            state.tx_hashes[key] = signed_hash
            if call.record_as:
                await self._record_hash(state.trade_id, call.record_as, signed_hash)

        try:
            tx_hash = await self.chain.submit_transaction(call, on_signed=persist)
        except Exception as e:
            if key in state.tx_hashes and not getattr(e, "chain_mutated", False):
                # Rejected outright: the signed hash never reached the network.
                state.tx_hashes.pop(key)
                if call.record_as:
                    await self._record_hash(state.trade_id, call.record_as, None)
            raise

        state.stage = Stage.CONFIRMING
        receipt = await self.chain.wait_for_receipt(tx_hash)
        state.receipts[key] = receipt
        if not receipt.succeeded:
            raise ExecutionFailed(f"{leg.name} {call.label} transaction {tx_hash} reverted")
        logger.info(f"Trade {state.trade_id}: {leg.name} {call.label} confirmed ({tx_hash})")
        return receipt

    async def execute(self, trade_id: int, legs: list[Leg]) -> ExecutionState:
        """Run legs in order.

        The trade record must already exist in ``pending``. On failure it is
        moved to ``failed`` before the error propagates; on success the
        caller confirms it with the final amounts.
        """
        state = ExecutionState(trade_id=trade_id, wallet=self.chain.address or "")
        leg: Optional[Leg] = None
        try:
            for leg in legs:
                calls = await leg.build(state) if leg.build else leg.calls
                for call in calls:
                    await self._run_call(state, leg, call)
                state.completed_legs += 1
                await self._record_leg(trade_id, state.completed_legs)
        except Exception as e:
            state.stage = Stage.FAILED
            logger.error(
                f"Trade {trade_id} failed in leg {leg.name if leg else '?'} "
                f"after {state.completed_legs} completed leg(s): {e}"
            )
            await self._record_failure(state, str(e))
            translated = self._translate(e, state, leg)
            if translated is e:
                raise
            raise translated from e

        state.stage = Stage.CONFIRMED
        return state

    @staticmethod
    def _translate(error: Exception, state: ExecutionState, leg: Optional[Leg]) -> Exception:
        tx_hashes = dict(state.tx_hashes)
        if isinstance(error, BroadcastUncertain):
            retryable = False
        else:
            retryable = is_retryable(error)
        details = {"tradeId": state.trade_id, "failedLeg": leg.name if leg else None}

        if state.completed_legs > 0:
            return PartialExecutionFailure(
                f"{leg.name} leg failed after {state.completed_legs} leg(s) confirmed: {error}",
                completed_legs=state.completed_legs,
                tx_hashes=tx_hashes,
                details=details,
                retryable=False,
                next_step=(leg.next_step if leg and leg.next_step else
                           "Reconcile the confirmed legs manually before retrying."),
            )

        # Deliberate rejections raised before anything was sent keep their class.
        if not tx_hashes and isinstance(error, CeloFXError) and type(error) is not ExecutionFailed:
            error.details.update(details)
            return error

        if tx_hashes:
            details["txHashes"] = tx_hashes
        return ExecutionFailed(
            str(error) or "Execution failed",
            code=leg.failure_code if leg else None,
            details=details,
            retryable=retryable,
            next_step=default_next_step(retryable),
            chain_mutated=bool(tx_hashes),
        )

"""Vault share accounting.

The share price is never stored. It is recomputed from the ledger every
time it is needed:

    share_price = (total_deposited + cumulative_pnl) / total_shares

where ``cumulative_pnl`` is the seed PnL plus the vault-asset PnL of every
confirmed trade. Shares are frozen into a deposit when it is recorded.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from web3 import Web3

from celofx.chain.abi import encode_call
from celofx.chain.client import ChainCall, ChainClient
from celofx.chain.tokens import Token, from_base_units, to_base_units
from celofx.errors import ExecutionFailed, InsufficientCustodyBalance, NotFound
from celofx.ledger.database import get_db
from celofx.ledger.models import DepositStatus, VaultDeposit
from celofx.ledger.repository import LedgerRepository

logger = logging.getLogger(__name__)

SHARE_QUANTUM = Decimal("0.000001")
MIN_DAYS_ACTIVE = Decimal("0.5")
MAX_APY = Decimal("999")
SECONDS_PER_DAY = Decimal(86400)


def compute_share_price(
    total_deposited: Decimal, cumulative_pnl: Decimal, total_shares: Decimal
) -> Decimal:
    """Share price from ledger totals; 1.0 for an empty vault."""
    if total_shares <= 0:
        return Decimal("1")
    return (total_deposited + cumulative_pnl) / total_shares


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def deposit_to_dict(deposit: VaultDeposit) -> dict[str, Any]:
    return {
        "id": deposit.id,
        "depositor": deposit.depositor,
        "amount": str(deposit.amount),
        "sharesIssued": str(deposit.shares_issued),
        "sharePriceAtEntry": str(deposit.share_price_at_entry),
        "status": deposit.status,
        "txHash": deposit.tx_hash,
        "withdrawTxHash": deposit.withdraw_tx_hash,
        "payoutAmount": str(deposit.payout_amount) if deposit.payout_amount is not None else None,
        "createdAt": deposit.created_at.isoformat() if deposit.created_at else None,
    }


@dataclass
class VaultMetrics:
    tvl: Decimal
    total_deposited: Decimal
    total_shares: Decimal
    share_price: Decimal
    depositors: int
    cumulative_pnl: Decimal
    apy_estimate: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "tvl": float(round(self.tvl, 2)),
            "totalDeposited": float(round(self.total_deposited, 4)),
            "totalShares": float(round(self.total_shares, 4)),
            "sharePrice": float(round(self.share_price, 6)),
            "depositors": self.depositors,
            "cumulativePnl": float(round(self.cumulative_pnl, 4)),
            "apyEstimate": float(round(self.apy_estimate, 2)),
        }


class LedgerAccountant:
    """Derives vault metrics and moves deposits through their lifecycle."""

    def __init__(
        self,
        token: Token,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        seed_pnl: float = 1.2,
    ):
        self.token = token
        self.session_factory = session_factory
        self.seed_pnl = Decimal(str(seed_pnl))

    async def metrics(self, now: Optional[datetime] = None) -> VaultMetrics:
        now = now or datetime.now(timezone.utc)
        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            deposited, shares, depositors = await repo.vault_totals()
            trade_pnl = await repo.confirmed_pnl_total()
            active = await repo.list_deposits(status=DepositStatus.ACTIVE.value)

        cumulative_pnl = self.seed_pnl + trade_pnl
        share_price = compute_share_price(deposited, cumulative_pnl, shares)

        oldest = min((_aware(d.created_at) for d in active if d.created_at), default=now)
        days_active = max(Decimal((now - oldest).total_seconds()) / SECONDS_PER_DAY, MIN_DAYS_ACTIVE)
        return_pct = cumulative_pnl / deposited if deposited > 0 else Decimal("0")
        apy = min(return_pct / days_active * 365 * 100, MAX_APY)

        return VaultMetrics(
            tvl=shares * share_price,
            total_deposited=deposited,
            total_shares=shares,
            share_price=share_price,
            depositors=depositors,
            cumulative_pnl=cumulative_pnl,
            apy_estimate=apy,
        )

    async def share_price(self) -> Decimal:
        return (await self.metrics()).share_price

    @staticmethod
    def shares_for(amount: Decimal, share_price: Decimal) -> Decimal:
        return (amount / share_price).quantize(SHARE_QUANTUM, rounding=ROUND_DOWN)

    async def issue_shares(self, depositor: str, amount: Decimal, tx_hash: str) -> VaultDeposit:
        """Record a verified deposit at the current share price."""
        price = await self.share_price()
        shares = self.shares_for(amount, price)
        async with get_db(self.session_factory) as session:
            deposit = await LedgerRepository(session).create_deposit(
                depositor=depositor,
                amount=amount,
                shares_issued=shares,
                share_price=price,
                tx_hash=tx_hash,
            )
        logger.info(f"Deposit {deposit.id}: {amount} {self.token.symbol} -> {shares} shares @ {price}")
        return deposit

    async def position(self, address: str) -> dict[str, Any]:
        metrics = await self.metrics()
        async with get_db(self.session_factory) as session:
            deposits = await LedgerRepository(session).list_deposits(
                depositor=address, status=DepositStatus.ACTIVE.value
            )
        shares = sum((d.shares_issued for d in deposits), Decimal("0"))
        deposited = sum((d.amount for d in deposits), Decimal("0"))
        value = shares * metrics.share_price
        return {
            "totalShares": float(round(shares, 4)),
            "currentValue": float(round(value, 4)),
            "totalDeposited": float(round(deposited, 4)),
            "pnl": float(round(value - deposited, 4)),
            "deposits": [deposit_to_dict(d) for d in deposits],
        }

    async def _load_owned(self, deposit_id: int, depositor: str) -> VaultDeposit:
        async with get_db(self.session_factory) as session:
            deposit = await LedgerRepository(session).get_deposit(deposit_id)
        if (
            deposit is None
            or deposit.depositor != depositor.lower()
            or deposit.status != DepositStatus.ACTIVE.value
        ):
            raise NotFound("Deposit not found or already withdrawn")
        return deposit

    async def _settle(self, chain: ChainClient, deposit: VaultDeposit, tx_hash: str) -> VaultDeposit:
        receipt = await chain.wait_for_receipt(tx_hash)
        async with get_db(self.session_factory) as session:
            repo = LedgerRepository(session)
            if not receipt.succeeded:
                await repo.clear_withdraw_submission(deposit.id, tx_hash)
            else:
                await repo.mark_withdrawn(deposit.id)
        if not receipt.succeeded:
            raise ExecutionFailed(
                f"Withdrawal transfer {tx_hash} reverted",
                code="WITHDRAW_FAILED",
                details={"depositId": deposit.id, "txHash": tx_hash},
                next_step="Check the custody wallet and retry the withdrawal.",
            )
        async with get_db(self.session_factory) as session:
            return await LedgerRepository(session).get_deposit(deposit.id)

    async def redeem(self, chain: ChainClient, deposit_id: int, depositor: str) -> dict[str, Any]:
        """Pay out a deposit's shares at the current price, exactly once.

        ``chain`` must sign as the custody wallet. A deposit whose payout was
        already submitted is settled against that transaction instead of
        paying again.
        """
        deposit = await self._load_owned(deposit_id, depositor)

        if deposit.withdraw_tx_hash:
            logger.warning(f"Deposit {deposit_id} has a submitted payout, settling {deposit.withdraw_tx_hash}")
            tx_hash = deposit.withdraw_tx_hash
            payout = deposit.payout_amount
        else:
            metrics = await self.metrics()
            payout = (deposit.shares_issued * metrics.share_price).quantize(
                SHARE_QUANTUM, rounding=ROUND_DOWN
            )
            payout_units = to_base_units(payout, self.token.decimals)

            balance = await chain.balance_of(self.token.address, chain.address)
            if balance < payout_units:
                available = from_base_units(balance, self.token.decimals)
                raise InsufficientCustodyBalance(
                    f"Insufficient custody balance: {available} {self.token.symbol} available, "
                    f"{payout} {self.token.symbol} needed",
                    details={"available": str(available), "required": str(payout)},
                    next_step=(
                        f"Fund wallet {chain.address} with "
                        f"{payout - available} {self.token.symbol}"
                    ),
                )

            transfer = ChainCall(
                label="withdraw",
                to=self.token.address,
                data=encode_call(
                    "transfer(address,uint256)",
                    [Web3.to_checksum_address(deposit.depositor), payout_units],
                ),
            )
            signed: list[str] = []

            async def record_submission(signed_hash: str) -> None:
                async with get_db(self.session_factory) as session:
                    recorded = await LedgerRepository(session).record_withdraw_submission(
                        deposit.id, signed_hash, payout
                    )
                if not recorded:
                    raise ExecutionFailed(
                        f"Deposit {deposit_id} already has a payout in flight",
                        code="WITHDRAW_IN_PROGRESS",
                        retryable=True,
                    )
                signed.append(signed_hash)

            try:
                tx_hash = await chain.submit_transaction(transfer, on_signed=record_submission)
            except Exception as e:
                if signed and not getattr(e, "chain_mutated", False):
                    async with get_db(self.session_factory) as session:
                        await LedgerRepository(session).clear_withdraw_submission(
                            deposit.id, signed[0]
                        )
                raise

        updated = await self._settle(chain, deposit, tx_hash)
        logger.info(f"Deposit {deposit_id} withdrawn: {payout} {self.token.symbol} ({tx_hash})")
        return {
            "success": True,
            "withdrawalAmount": float(round(Decimal(payout), 4)),
            "txHash": tx_hash,
            "celoscanUrl": f"https://celoscan.io/tx/{tx_hash}",
            "deposit": deposit_to_dict(updated),
        }

"""Vault deposit and withdrawal workflows."""

import logging
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from celofx.chain.client import ChainClient
from celofx.chain.signing import is_address
from celofx.errors import Forbidden, ValidationError
from celofx.execution.policy import parse_amount
from celofx.execution.wallets import WalletResolver
from celofx.ledger.database import get_db
from celofx.ledger.repository import LedgerRepository
from celofx.security.auth import Authorized
from celofx.utils.locks import keyed_lock
from celofx.vault.accountant import LedgerAccountant, deposit_to_dict
from celofx.vault.verifier import DepositVerifier

logger = logging.getLogger(__name__)


def _check_owner(authorized: Authorized, depositor: str) -> None:
    if not is_address(depositor):
        raise ValidationError("depositor must be a 0x address", code="INVALID_ADDRESS")
    if not authorized.is_agent and authorized.identity != depositor.lower():
        raise Forbidden("Signer does not own this deposit")


class VaultService:
    """Credits verified deposits and pays out withdrawals.

    Both operations are serialised per resource with keyed locks:
    ``vault-deposit:{depositor}:{txHash}`` and ``vault-withdraw:{depositId}``.
    """

    def __init__(
        self,
        accountant: LedgerAccountant,
        verifier: DepositVerifier,
        wallets: WalletResolver,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.accountant = accountant
        self.verifier = verifier
        self.wallets = wallets
        self.session_factory = session_factory

    async def _existing(self, depositor: str, tx_hash: str):
        async with get_db(self.session_factory) as session:
            return await LedgerRepository(session).get_deposit_by_tx(depositor, tx_hash)

    async def deposit(
        self, authorized: Authorized, depositor: str, amount_raw: Any, tx_hash: str
    ) -> dict[str, Any]:
        _check_owner(authorized, depositor)
        amount = parse_amount(amount_raw)
        if not tx_hash:
            raise ValidationError("Missing depositor, amount, or txHash", code="INVALID_REQUEST")

        key = f"vault-deposit:{depositor.lower()}:{tx_hash.lower()}"
        async with keyed_lock(key, operation="vault deposit"):
            existing = await self._existing(depositor, tx_hash)
            if existing:
                return {"success": True, "deposit": deposit_to_dict(existing), "idempotent": True}

            await self.verifier.verify(depositor, amount, tx_hash)
            try:
                deposit = await self.accountant.issue_shares(depositor, amount, tx_hash)
            except IntegrityError:
                # Another process recorded the same transaction first
                existing = await self._existing(depositor, tx_hash)
                if existing is None:
                    raise
                return {"success": True, "deposit": deposit_to_dict(existing), "idempotent": True}

        metrics = await self.accountant.metrics()
        return {
            "success": True,
            "deposit": deposit_to_dict(deposit),
            "newMetrics": metrics.to_dict(),
        }

    async def withdraw(
        self,
        authorized: Authorized,
        depositor: str,
        deposit_id: Any,
        chain: Optional[ChainClient] = None,
    ) -> dict[str, Any]:
        _check_owner(authorized, depositor)
        try:
            deposit_id = int(deposit_id)
        except (TypeError, ValueError):
            raise ValidationError("Missing depositId or depositor", code="INVALID_REQUEST")

        async with keyed_lock(f"vault-withdraw:{deposit_id}", operation="vault withdraw"):
            chain = chain or self.wallets.agent_chain()
            return await self.accountant.redeem(chain, deposit_id, depositor)

    async def overview(self, address: Optional[str] = None) -> dict[str, Any]:
        """Metrics, all deposits and, for ``address``, its position."""
        metrics = await self.accountant.metrics()
        async with get_db(self.session_factory) as session:
            deposits = await LedgerRepository(session).list_deposits()
        position = await self.accountant.position(address) if address else None
        return {
            "metrics": metrics.to_dict(),
            "deposits": [deposit_to_dict(d) for d in reversed(deposits)],
            "position": position,
        }

"""Proof-of-payment checks for vault deposits."""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal

from celofx.chain.abi import TRANSFER_EVENT, decode_log
from celofx.chain.client import ChainClient
from celofx.chain.tokens import Token, to_base_units
from celofx.errors import ValidationError, VerificationFailed, VerificationPending

logger = logging.getLogger(__name__)

TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")


@dataclass
class VerifiedTransfer:
    tx_hash: str
    depositor: str
    amount_units: int
    block_number: int


class DepositVerifier:
    """Confirms a transaction moved exactly the claimed amount into custody.

    A deposit is accepted only when its receipt succeeded, the transaction
    was sent by the depositor, and the vault asset emitted
    ``Transfer(depositor, custody, amount)`` with the amount matching to the
    last base unit.
    """

    def __init__(self, chain: ChainClient, custody_address: str, token: Token):
        self.chain = chain
        self.custody_address = custody_address.lower()
        self.token = token

    async def verify(self, depositor: str, amount: Decimal, tx_hash: str) -> VerifiedTransfer:
        if not TX_HASH_RE.match(tx_hash or ""):
            raise ValidationError("txHash must be a 0x-prefixed 32-byte hash", code="INVALID_TX_HASH")
        depositor = depositor.lower()
        expected_units = to_base_units(amount, self.token.decimals, exact=True)

        receipt = await self.chain.get_receipt(tx_hash)
        if receipt is None:
            raise VerificationPending(
                f"Transaction {tx_hash} is not mined yet",
                next_step="Retry once the transaction has confirmed.",
            )
        if not receipt.succeeded:
            raise VerificationFailed(f"Transaction {tx_hash} failed on-chain", reason="TX_FAILED")

        tx = await self.chain.get_transaction(tx_hash)
        sender = (tx or {}).get("from") or receipt.from_address or ""
        if sender.lower() != depositor:
            raise VerificationFailed(
                "Transaction sender does not match depositor", reason="SENDER_MISMATCH"
            )

        for log in receipt.logs:
            if (log.get("address") or "").lower() != self.token.address.lower():
                continue
            decoded = decode_log(TRANSFER_EVENT, log)
            if decoded is None:
                continue
            if (
                decoded.args["from"].lower() == depositor
                and decoded.args["to"].lower() == self.custody_address
                and decoded.args["value"] == expected_units
            ):
                logger.info(f"Verified deposit {tx_hash}: {amount} {self.token.symbol} from {depositor}")
                return VerifiedTransfer(tx_hash.lower(), depositor, expected_units, receipt.block_number)

        raise VerificationFailed(
            f"No {self.token.symbol} transfer of {amount} from {depositor} to custody in {tx_hash}",
            reason="NO_MATCHING_TRANSFER",
        )

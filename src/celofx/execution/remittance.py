"""Cross-border remittance: optional currency swap, then payout to a recipient."""

import logging
from decimal import Decimal
from typing import Optional

from web3 import Web3

from celofx.chain.abi import encode_call
from celofx.chain.client import ChainCall
from celofx.chain.signing import is_address
from celofx.chain.tokens import to_base_units
from celofx.errors import ValidationError
from celofx.execution.base import ExecutionService, quote_failed, with_record
from celofx.execution.orchestrator import (
    ExecutionState,
    Leg,
    Stage,
    TransactionOrchestrator,
    received_amount,
)
from celofx.execution.policy import parse_amount
from celofx.ledger.models import TradeKind
from celofx.security.auth import Authorized

logger = logging.getLogger(__name__)


class RemittanceService(ExecutionService):
    kind = TradeKind.REMITTANCE

    async def execute(
        self,
        authorized: Authorized,
        from_token: str,
        to_token: str,
        amount_raw: str,
        recipient: str,
        corridor: Optional[str] = None,
    ) -> dict:
        s = self.settings
        self.ctx.policy.ensure_active()
        amount = parse_amount(amount_raw)
        self.ctx.policy.ensure_within_cap(amount, s.max_remittance_amount, "remittance")
        if not is_address(recipient):
            raise ValidationError(
                "recipientAddress must be a 0x address", code="INVALID_RECIPIENT"
            )
        token_in, token_out = self._tokens(from_token, to_token, allow_same=True)
        needs_swap = token_in.symbol != token_out.symbol
        chain = self.ctx.wallets.resolve(authorized)
        wallet = chain.address

        async with self.ctx.policy.volume_slot(amount) as reservation:
            quote = None
            if needs_swap:
                logger.info(f"[{Stage.QUOTING.value}] remittance {amount} {from_token} -> {to_token}")
                quote = await self.ctx.aggregator.best_quote(from_token, to_token, amount)
                if quote is None:
                    raise quote_failed(f"no venue quoted {from_token} -> {to_token}")

            trade_id = await self._create_trade(
                pair=f"{from_token}/{to_token}",
                from_token=from_token,
                to_token=to_token,
                amount_in=amount,
                rate=quote.rate if quote else Decimal("1"),
                venue=quote.venue if quote else None,
                recipient=recipient.lower(),
                requester=authorized.identity,
                execution_wallet=wallet,
            )
            reservation.settle()

            planned = {"amount": amount}
            legs = []
            if quote:
                venue = self.ctx.aggregator.get_venue(quote.venue)

                async def build_swap(state: ExecutionState):
                    plan = await venue.build_swap(
                        from_token, to_token, amount, wallet, s.default_slippage_pct
                    )
                    planned["amount"] = plan.quote.amount_out
                    return [
                        with_record(plan.approval, "approval_tx_hash"),
                        with_record(plan.swap, "swap_tx_hash"),
                    ]

                legs.append(Leg("swap", build=build_swap))

            async def build_transfer(state: ExecutionState):
                receipt = state.receipt_for("swap_tx_hash")
                received = received_amount(receipt, token_out, wallet) if receipt else None
                if received is not None:
                    planned["amount"] = received
                transfer = ChainCall(
                    label="transfer",
                    to=token_out.address,
                    data=encode_call(
                        "transfer(address,uint256)",
                        [
                            Web3.to_checksum_address(recipient),
                            to_base_units(planned["amount"], token_out.decimals),
                        ],
                    ),
                )
                return [with_record(transfer, "transfer_tx_hash")]

            legs.append(
                Leg(
                    "transfer",
                    build=build_transfer,
                    failure_code="TRANSFER_FAILED",
                    next_step=(
                        f"Swapped {to_token} remains in {wallet}; "
                        f"transfer it to {recipient} manually."
                    ),
                )
            )

            orchestrator = TransactionOrchestrator(chain, self.ctx.session_factory)
            state = await orchestrator.execute(trade_id, legs)

        delivered = planned["amount"]
        await self._confirm_trade(trade_id, amount_out=delivered)

        transfer_tx_hash = state.tx_hashes.get("transfer_tx_hash")
        corridor = corridor or f"{from_token} -> {to_token}"
        self._notify(
            "remittance_executed",
            {
                "tradeId": trade_id,
                "corridor": corridor,
                "amountIn": str(amount),
                "amountDelivered": str(delivered),
                "recipient": recipient,
                "transferTxHash": transfer_tx_hash,
            },
        )
        return {
            "success": True,
            "tradeId": trade_id,
            "mode": authorized.mode.value,
            "requester": authorized.identity,
            "executionWallet": wallet,
            "corridor": corridor,
            "fromToken": from_token,
            "toToken": to_token,
            "amountIn": str(amount),
            "amountDelivered": str(delivered),
            "recipientAddress": recipient,
            "approvalTxHash": state.tx_hashes.get("approval_tx_hash"),
            "swapTxHash": state.tx_hashes.get("swap_tx_hash"),
            "transferTxHash": transfer_tx_hash,
        }

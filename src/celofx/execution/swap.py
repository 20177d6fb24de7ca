"""Single venue swap against the forex reference rate.

The best venue quote is compared to the off-chain forex rate; only a
positive spread above the dynamic threshold is traded. The quote is
taken again right before sending and the trade is abandoned if it
drifted too far.
"""

import logging
from decimal import Decimal

from celofx.errors import NotProfitable, PolicyViolation, RateMoved
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
from celofx.routing.aggregator import ProfitabilityGate, spread_pct
from celofx.security.auth import Authorized

logger = logging.getLogger(__name__)

CELOSCAN_TX_URL = "https://celoscan.io/tx/"


def rate_drift_bps(quoted: Decimal, current: Decimal) -> Decimal:
    if quoted == 0:
        return Decimal("0")
    return abs(current - quoted) / quoted * 10000


class SwapService(ExecutionService):
    kind = TradeKind.SWAP

    async def execute(
        self, authorized: Authorized, from_token: str, to_token: str, amount_raw: str
    ) -> dict:
        """Swap when the venue pays more than the forex rate."""
        s = self.settings
        self.ctx.policy.ensure_active()
        amount = parse_amount(amount_raw)
        self.ctx.policy.ensure_within_cap(amount, s.max_swap_amount, "swap")
        token_in, token_out = self._tokens(from_token, to_token)
        chain = self.ctx.wallets.resolve(authorized)
        wallet = chain.address

        async with self.ctx.policy.volume_slot(amount) as reservation:
            logger.info(f"[{Stage.QUOTING.value}] swap {amount} {from_token} -> {to_token}")
            reference = await self.ctx.price_feed.reference_rate(from_token, to_token)
            quote = await self.ctx.aggregator.best_quote(from_token, to_token, amount)
            if quote is None:
                raise quote_failed(f"no venue quoted {from_token} -> {to_token}")

            spread = spread_pct(quote.rate, reference.value)
            logger.info(
                f"[{Stage.THRESHOLDING.value}] {quote.venue} rate {quote.rate:.6f} vs "
                f"forex {reference.value:.6f} ({spread:.4f}%)"
            )

            gas = await self._gas()
            gas_cost = gas.cost_usd if gas else Decimal("0")
            if gas and gas.gas_price_gwei > Decimal(str(s.max_gas_price_gwei)):
                raise PolicyViolation(
                    f"Gas price {gas.gas_price_gwei:.2f} gwei exceeds {s.max_gas_price_gwei} gwei",
                    code="GAS_TOO_HIGH",
                    retryable=True,
                    next_step="Retry when network gas prices fall.",
                )

            notional = await self._notional_usd(token_in, amount)
            gate = ProfitabilityGate(
                base_floor_pct=s.base_spread_floor_pct,
                slippage_buffer_pct=s.slippage_buffer_pct,
                safety_margin_pct=s.safety_margin_pct,
                min_abs_profit_usd=s.min_abs_profit_usd,
            )
            threshold = gate.check(spread, notional, gas_cost, directional=True)

            expected_profit_usd = notional * spread / 100
            if gas and gas_cost / expected_profit_usd > Decimal(str(s.max_gas_to_profit_ratio)):
                raise NotProfitable(
                    f"Gas ${gas_cost:.4f} would consume over "
                    f"{s.max_gas_to_profit_ratio:.0%} of the ${expected_profit_usd:.4f} profit",
                    spread_pct=float(spread),
                    threshold_pct=float(threshold.required_pct),
                    code="GAS_EXCEEDS_PROFIT",
                    next_step="Increase the amount or wait for lower gas.",
                )

            trade_id = await self._create_trade(
                pair=f"{from_token}/{to_token}",
                from_token=from_token,
                to_token=to_token,
                amount_in=amount,
                rate=quote.rate,
                spread_pct=spread,
                venue=quote.venue,
                requester=authorized.identity,
                execution_wallet=wallet,
            )
            reservation.settle()
            venue = self.ctx.aggregator.get_venue(quote.venue)
            planned = {}

            async def build(state: ExecutionState):
                plan = await venue.build_swap(
                    from_token, to_token, amount, wallet, s.default_slippage_pct
                )
                drift = rate_drift_bps(quote.rate, plan.quote.rate)
                if drift > s.max_rate_drift_bps:
                    raise RateMoved(
                        f"Rate moved {float(drift):.1f} bps since quote (max {s.max_rate_drift_bps})",
                        retryable=True,
                        details={"quotedRate": str(quote.rate), "currentRate": str(plan.quote.rate)},
                        next_step="Retry with a fresh quote in a few seconds.",
                    )
                planned["plan"] = plan
                return [
                    with_record(plan.approval, "approval_tx_hash"),
                    with_record(plan.swap, "swap_tx_hash"),
                ]

            orchestrator = TransactionOrchestrator(chain, self.ctx.session_factory)
            state = await orchestrator.execute(trade_id, [Leg("swap", build=build)])

        plan = planned["plan"]
        amount_out = received_amount(state.receipt_for("swap_tx_hash"), token_out, wallet)
        if amount_out is None:
            amount_out = plan.quote.amount_out
        rate = amount_out / amount
        pnl = amount_out / reference.value - amount
        await self._confirm_trade(
            trade_id,
            amount_out=amount_out,
            rate=rate,
            pnl=await self.pnl_in_vault_asset(token_in, pnl),
        )

        swap_tx_hash = state.tx_hashes.get("swap_tx_hash")
        self._notify(
            "arbitrage_swap_executed",
            {
                "tradeId": trade_id,
                "fromToken": from_token,
                "toToken": to_token,
                "amountIn": str(amount),
                "amountOut": str(amount_out),
                "spreadPct": float(spread),
                "requester": authorized.identity,
                "swapTxHash": swap_tx_hash,
            },
        )
        return {
            "success": True,
            "tradeId": trade_id,
            "authMode": authorized.mode.value,
            "requester": authorized.identity,
            "executionWallet": wallet,
            "venue": quote.venue,
            "approvalTxHash": state.tx_hashes.get("approval_tx_hash"),
            "swapTxHash": swap_tx_hash,
            "rate": str(rate),
            "amountOut": str(amount_out),
            "spreadPct": float(spread),
            "forexRate": str(reference.value),
            "celoscanUrl": f"{CELOSCAN_TX_URL}{swap_tx_hash}",
            "gasPriceGwei": float(gas.gas_price_gwei) if gas else None,
            "gasCostUsd": float(gas_cost),
            "threshold": threshold.to_dict(),
        }

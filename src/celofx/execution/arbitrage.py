"""Cross-venue arbitrage: buy on the venue paying more, sell back on the other.

Flow:
1. Quote both venues for the pair (QUOTING)
2. Gate on the venue spread, then on the expected round-trip PnL (THRESHOLDING)
3. Leg 1 buys on the buy venue, leg 2 sells what leg 1 actually received
4. Confirm the trade with the realised PnL
"""

import logging
from decimal import Decimal
from typing import Optional

from celofx.errors import NotProfitable, ValidationError
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

ARB_VENUES = ("mento", "uniswap")


def parse_pair(pair: str) -> tuple[str, str]:
    parts = [p.strip() for p in (pair or "").split("/")]
    if len(parts) != 2 or not all(parts):
        raise ValidationError(f"Invalid pair: {pair}. Expected FROM/TO", code="INVALID_TOKEN")
    return parts[0], parts[1]


class ArbitrageService(ExecutionService):
    kind = TradeKind.ARBITRAGE

    def _gate(self) -> ProfitabilityGate:
        s = self.settings
        return ProfitabilityGate(
            base_floor_pct=s.min_venue_spread_pct,
            slippage_buffer_pct=s.slippage_buffer_pct,
            safety_margin_pct=s.safety_margin_pct,
            min_abs_profit_usd=s.min_abs_profit_usd,
        )

    def _pick_venues(
        self, quotes: dict, buy_venue: Optional[str], sell_venue: Optional[str]
    ) -> tuple[str, str]:
        if buy_venue and buy_venue not in ARB_VENUES:
            raise ValidationError(f"Unknown buyVenue: {buy_venue}", code="INVALID_VENUE")
        if sell_venue and sell_venue not in ARB_VENUES:
            raise ValidationError(f"Unknown sellVenue: {sell_venue}", code="INVALID_VENUE")
        buy = buy_venue or (
            next(v for v in ARB_VENUES if v != sell_venue) if sell_venue
            else max(ARB_VENUES, key=lambda v: quotes[v].rate)
        )
        sell = sell_venue or next(v for v in ARB_VENUES if v != buy)
        if buy == sell:
            raise ValidationError("buyVenue and sellVenue must differ", code="INVALID_VENUE")
        return buy, sell

    async def execute(
        self,
        authorized: Authorized,
        pair: str,
        amount_raw: str,
        buy_venue: Optional[str] = None,
        sell_venue: Optional[str] = None,
    ) -> dict:
        """Run one arbitrage round trip and return the response payload."""
        s = self.settings
        self.ctx.policy.ensure_active()
        amount = parse_amount(amount_raw)
        self.ctx.policy.ensure_within_cap(amount, s.max_arb_amount, "arbitrage")
        from_symbol, to_symbol = parse_pair(pair)
        token_in, token_out = self._tokens(from_symbol, to_symbol)
        chain = self.ctx.wallets.resolve(authorized)
        wallet = chain.address

        async with self.ctx.policy.volume_slot(amount) as reservation:
            logger.info(f"[{Stage.QUOTING.value}] arbitrage {amount} {pair} for {authorized.identity}")
            quotes = await self.ctx.aggregator.get_quotes(
                from_symbol, to_symbol, amount, list(ARB_VENUES)
            )
            missing = [name for name, quote in quotes.items() if quote is None]
            if missing:
                raise quote_failed(f"need quotes from both venues, missing {', '.join(missing)}")

            buy_name, sell_name = self._pick_venues(quotes, buy_venue, sell_venue)
            buy_quote = quotes[buy_name]
            venue_spread = spread_pct(buy_quote.rate, quotes[sell_name].rate)

            logger.info(f"[{Stage.THRESHOLDING.value}] venue spread {venue_spread:.4f}%")
            notional = await self._notional_usd(token_in, amount)
            gas = await self._gas()
            gas_cost = gas.cost_usd * 2 if gas else Decimal("0")
            threshold = self._gate().check(venue_spread, notional, gas_cost)

            sell_quotes = await self.ctx.aggregator.get_quotes(
                to_symbol, from_symbol, buy_quote.amount_out, [sell_name]
            )
            sell_quote = sell_quotes[sell_name]
            if sell_quote is None:
                raise quote_failed(f"{sell_name} could not quote the sell leg")

            expected_pnl = sell_quote.amount_out - amount
            expected_pnl_pct = expected_pnl / amount * 100
            if expected_pnl_pct < Decimal(str(s.min_expected_pnl_pct)):
                raise NotProfitable(
                    f"Expected round-trip PnL {float(expected_pnl_pct):.4f}% is below "
                    f"{s.min_expected_pnl_pct}%",
                    spread_pct=float(expected_pnl_pct),
                    threshold_pct=s.min_expected_pnl_pct,
                    code="ARB_SPREAD_TOO_LOW",
                    details={"venueSpreadPct": float(venue_spread), "expectedPnl": str(expected_pnl)},
                    next_step="Wait for venue prices to diverge further.",
                )

            trade_id = await self._create_trade(
                pair=f"{from_symbol}/{to_symbol}",
                from_token=from_symbol,
                to_token=to_symbol,
                amount_in=amount,
                rate=buy_quote.rate,
                spread_pct=venue_spread,
                venue=f"{buy_name}->{sell_name}",
                requester=authorized.identity,
                execution_wallet=wallet,
            )
            reservation.settle()

            buy_venue_obj = self.ctx.aggregator.get_venue(buy_name)
            sell_venue_obj = self.ctx.aggregator.get_venue(sell_name)

            async def build_buy(state: ExecutionState):
                plan = await buy_venue_obj.build_swap(
                    from_symbol, to_symbol, amount, wallet, s.default_slippage_pct
                )
                return [
                    with_record(plan.approval, "approval_tx_hash"),
                    with_record(plan.swap, "swap_tx_hash"),
                ]

            async def build_sell(state: ExecutionState):
                bought = received_amount(state.receipt_for("swap_tx_hash"), token_out, wallet)
                plan = await sell_venue_obj.build_swap(
                    to_symbol, from_symbol, bought or buy_quote.amount_out, wallet,
                    s.default_slippage_pct,
                )
                return [
                    with_record(plan.approval, "sell_approval_tx_hash"),
                    with_record(plan.swap, "sell_swap_tx_hash"),
                ]

            orchestrator = TransactionOrchestrator(chain, self.ctx.session_factory)
            state = await orchestrator.execute(
                trade_id,
                [
                    Leg("buy", build=build_buy),
                    Leg(
                        "sell",
                        build=build_sell,
                        next_step=(
                            f"Leg 1 bought {to_symbol} which remains in {wallet}; "
                            f"sell it back to {from_symbol} manually or on the next cycle."
                        ),
                    ),
                ],
            )

        final_out = received_amount(state.receipt_for("sell_swap_tx_hash"), token_in, wallet)
        if final_out is None:
            final_out = sell_quote.amount_out
        realized_pnl = final_out - amount
        await self._confirm_trade(
            trade_id,
            amount_out=final_out,
            pnl=await self.pnl_in_vault_asset(token_in, realized_pnl),
        )

        tx_hashes = {
            "buyApproval": state.tx_hashes.get("approval_tx_hash"),
            "buySwap": state.tx_hashes.get("swap_tx_hash"),
            "sellApproval": state.tx_hashes.get("sell_approval_tx_hash"),
            "sellSwap": state.tx_hashes.get("sell_swap_tx_hash"),
        }
        self._notify(
            "arbitrage_executed",
            {
                "tradeId": trade_id,
                "pair": f"{from_symbol}/{to_symbol}",
                "amountIn": str(amount),
                "pnl": str(realized_pnl),
                "requester": authorized.identity,
                "sellSwapTxHash": tx_hashes["sellSwap"],
            },
        )
        return {
            "success": True,
            "tradeId": trade_id,
            "authMode": authorized.mode.value,
            "requester": authorized.identity,
            "executionWallet": wallet,
            "pair": f"{from_symbol}/{to_symbol}",
            "amountIn": str(amount),
            "amountOut": str(final_out),
            "buyVenue": buy_name,
            "sellVenue": sell_name,
            "venueSpreadPct": float(venue_spread),
            "expectedPnl": str(expected_pnl),
            "expectedPnlPct": float(expected_pnl_pct),
            "realizedPnl": str(realized_pnl),
            "threshold": threshold.to_dict(),
            "txHashes": tx_hashes,
        }

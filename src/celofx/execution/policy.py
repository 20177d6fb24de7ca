"""Operational limits on executions: circuit breaker, notional caps, daily volume."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from celofx.errors import AgentPaused, ValidationError, VolumeLimitExceeded
from celofx.ledger.database import get_db
from celofx.ledger.repository import LedgerRepository

logger = logging.getLogger(__name__)

VOLUME_WINDOW = timedelta(hours=24)


def parse_amount(raw, field_name: str = "amount") -> Decimal:
    """Parse a positive, finite decimal amount."""
    try:
        amount = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid {field_name}: {raw}", code="INVALID_AMOUNT")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field_name} must be a positive number", code="INVALID_AMOUNT")
    return amount


class VolumeReservation:
    """Volume held for an execution until its trade record is counted by the ledger."""

    def __init__(self, amount: Decimal):
        self.amount = amount
        self.settled = False

    def settle(self) -> None:
        self.settled = True


class ExecutionPolicy:
    """Checks applied before any quote is taken."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        paused: bool = False,
        max_daily_volume: float = 500.0,
    ):
        self.session_factory = session_factory
        self.paused = paused
        self.max_daily_volume = Decimal(str(max_daily_volume))
        self._in_flight: list[VolumeReservation] = []
        self._lock = asyncio.Lock()

    def ensure_active(self) -> None:
        if self.paused:
            raise AgentPaused(
                "Agent is paused by the circuit breaker",
                next_step="Wait for operators to resume the agent",
            )

    @staticmethod
    def ensure_within_cap(amount: Decimal, cap: float, action: str) -> None:
        if amount > Decimal(str(cap)):
            raise ValidationError(
                f"Max {action} amount is {cap}", code="INVALID_AMOUNT"
            )

    async def volume_used(self) -> Decimal:
        since = datetime.now(timezone.utc) - VOLUME_WINDOW
        async with get_db(self.session_factory) as session:
            return await LedgerRepository(session).volume_since(since)

    @asynccontextmanager
    async def volume_slot(self, amount: Decimal):
        """Reserve ``amount`` of the rolling daily volume for one execution.

        Call ``settle()`` on the yielded reservation once the trade record
        exists; from then on the ledger counts it. Unsettled reservations
        are dropped when the block exits.
        """
        async with self._lock:
            held = sum((r.amount for r in self._in_flight if not r.settled), Decimal("0"))
            used = await self.volume_used() + held
            if used + amount > self.max_daily_volume:
                logger.warning(f"Volume limit hit: used {used}, requested {amount}")
                raise VolumeLimitExceeded(
                    f"Daily volume limit reached ({used} of {self.max_daily_volume} used)",
                    details={"used": str(used), "limit": str(self.max_daily_volume)},
                    next_step="Retry after the rolling 24h window frees capacity",
                )
            reservation = VolumeReservation(amount)
            self._in_flight.append(reservation)
        try:
            yield reservation
        finally:
            self._in_flight.remove(reservation)

"""Single-use nonce ledger for signed requests."""

import logging
import time
from typing import Callable

from celofx.security.store import KeyValueStore

logger = logging.getLogger(__name__)

MAX_NONCE_LENGTH = 128


class NonceLedger:
    """Records consumed (scope, signer, nonce) tuples.

    A tuple can be consumed at most once while its timestamp is inside the
    skew window. Entries are kept for ``ttl_seconds`` which must cover the
    whole window (past and future skew), so expiry never reopens a nonce
    that would still pass the timestamp check.
    """

    def __init__(
        self,
        store: KeyValueStore,
        max_clock_skew_seconds: int = 300,
        ttl_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        if ttl_seconds < 2 * max_clock_skew_seconds:
            raise ValueError(
                f"Nonce TTL {ttl_seconds}s must be at least twice the clock skew "
                f"({max_clock_skew_seconds}s)"
            )
        self.store = store
        self.max_clock_skew_seconds = max_clock_skew_seconds
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    @staticmethod
    def key(scope: str, signer: str, nonce: str) -> str:
        return f"nonce:{scope}:{signer.lower()}:{nonce}"

    def within_skew(self, timestamp_ms: float) -> bool:
        """Check a millisecond timestamp against the allowed clock skew."""
        now_ms = self.clock() * 1000
        return abs(now_ms - timestamp_ms) <= self.max_clock_skew_seconds * 1000

    async def consume(self, scope: str, signer: str, nonce: str, timestamp_ms: float) -> bool:
        """Atomically mark a nonce as used.

        Args:
            scope: Action scope, e.g. "arb-execute"
            signer: Address or identity that signed the request
            nonce: Caller-chosen nonce
            timestamp_ms: Signed request timestamp (epoch milliseconds)

        Returns:
            True exactly once per tuple; False if invalid, stale or replayed
        """
        nonce = (nonce or "").strip()
        if not nonce or len(nonce) > MAX_NONCE_LENGTH:
            return False
        if not self.within_skew(timestamp_ms):
            logger.info(f"Rejected nonce for {signer}: timestamp outside skew window")
            return False

        consumed = await self.store.put_if_absent(
            self.key(scope, signer, nonce),
            {"timestamp": timestamp_ms},
            self.ttl_seconds,
        )
        if not consumed:
            logger.warning(f"Replayed nonce rejected: scope={scope} signer={signer}")
        return consumed

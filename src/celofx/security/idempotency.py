"""Idempotency cache for mutating requests.

A retried request with the same key returns the response of the first
execution instead of executing again. Entries expire strictly after the
TTL; there is no LRU eviction that could forget a live result.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from celofx.security.store import KeyValueStore

logger = logging.getLogger(__name__)

MAX_TOKEN_LENGTH = 128
_IN_FLIGHT = "in_flight"
_DONE = "done"


@dataclass(frozen=True)
class CachedResponse:
    """A stored response: HTTP status plus JSON body."""

    status_code: int
    body: dict[str, Any]


def derive_idempotency_key(
    scope: str,
    token: Optional[str] = None,
    signer: Optional[str] = None,
    nonce: Optional[str] = None,
) -> Optional[str]:
    """Build the cache key for a request.

    An explicit caller token wins. Otherwise a wallet-signed request is
    keyed by its signer and nonce. Requests with neither are not cached.
    """
    token = (token or "").strip()[:MAX_TOKEN_LENGTH]
    if token:
        return f"{scope}:{token}"
    nonce = (nonce or "").strip()
    if signer and nonce:
        return f"{scope}:{signer.lower()}:{nonce}"
    return None


class IdempotencyCache:
    """Stores responses by idempotency key."""

    def __init__(self, store: KeyValueStore, ttl_seconds: int = 900):
        self.store = store
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(key: str) -> str:
        return f"idem:{key}"

    async def get(self, key: str) -> Optional[CachedResponse]:
        """Return the completed response for a key, if any."""
        entry = await self.store.get(self._key(key))
        if not entry or entry.get("state") != _DONE:
            return None
        return CachedResponse(status_code=entry["status_code"], body=entry["body"])

    async def claim(self, key: str) -> bool:
        """Reserve a key for execution.

        Returns:
            False if another request already holds or completed the key
        """
        return await self.store.put_if_absent(
            self._key(key), {"state": _IN_FLIGHT}, self.ttl_seconds
        )

    async def release(self, key: str) -> None:
        """Drop a claim so the request can be retried."""
        await self.store.delete(self._key(key))

    async def put(self, key: str, response: CachedResponse) -> None:
        await self.store.put(
            self._key(key),
            {"state": _DONE, "status_code": response.status_code, "body": response.body},
            self.ttl_seconds,
        )
        logger.debug(f"Cached response for {key} (status {response.status_code})")

"""Keyed TTL stores backing the nonce ledger and the idempotency cache.

Two interchangeable backends:
- MemoryStore: in-process dict guarded by an asyncio.Lock. Correct for a
  single process only.
- UpstashStore: Redis over the Upstash REST API, shared by every instance.
  ``SET NX PX`` gives an atomic check-and-set across processes.

Values are JSON documents; what comes back from ``get`` is exactly what was
stored.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import httpx

from celofx.errors import TransientInfrastructureFailure

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Abstract keyed store with per-entry expiry."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None if absent or expired."""
        pass

    @abstractmethod
    async def put(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Store a value unconditionally."""
        pass

    @abstractmethod
    async def put_if_absent(self, key: str, value: Any, ttl_seconds: float) -> bool:
        """Atomically store a value unless the key is live.

        Returns:
            True if this call stored the value
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass


class MemoryStore(KeyValueStore):
    """In-process store.

    Entries whose TTL has elapsed are dropped on the first write after
    ``prune_interval`` seconds, and on every write once the store holds
    ``max_entries``. Live entries are never evicted early.
    """

    def __init__(
        self,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        prune_interval: float = 60.0,
    ):
        self.max_entries = max_entries
        self.clock = clock
        self.prune_interval = prune_interval
        self._entries: dict[str, tuple[float, str]] = {}
        self._lock = asyncio.Lock()
        self._last_prune: Optional[float] = None

    def __len__(self) -> int:
        return len(self._entries)

    def _live(self, key: str, now: float) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if now >= expires_at:
            del self._entries[key]
            return None
        return raw

    def _prune(self, now: float) -> None:
        if self._last_prune is None:
            self._last_prune = now
        full = self.max_entries is not None and len(self._entries) >= self.max_entries
        if not full and now - self._last_prune < self.prune_interval:
            return
        self._last_prune = now
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Pruned {len(expired)} expired entries")

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            raw = self._live(key, self.clock())
        return json.loads(raw) if raw is not None else None

    async def put(self, key: str, value: Any, ttl_seconds: float) -> None:
        raw = json.dumps(value, default=str)
        async with self._lock:
            now = self.clock()
            self._prune(now)
            self._entries[key] = (now + ttl_seconds, raw)

    async def put_if_absent(self, key: str, value: Any, ttl_seconds: float) -> bool:
        raw = json.dumps(value, default=str)
        async with self._lock:
            now = self.clock()
            if self._live(key, now) is not None:
                return False
            self._prune(now)
            self._entries[key] = (now + ttl_seconds, raw)
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)


class UpstashStore(KeyValueStore):
    """Shared store speaking the Upstash Redis REST protocol.

    Commands are posted as JSON arrays to the base URL. Any transport or
    server error raises TransientInfrastructureFailure; the store never
    degrades to a local check, which would let two instances accept the
    same nonce.
    """

    def __init__(
        self,
        url: str,
        token: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport

    async def _command(self, *args: Any) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    json=[str(a) for a in args],
                    headers={"Authorization": f"Bearer {self.token}"},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Shared store {args[0]} failed: {e}")
            raise TransientInfrastructureFailure(
                f"Shared store unavailable: {e}",
                next_step="Retry shortly; check the Upstash endpoint and token",
            ) from e

        if "error" in data:
            raise TransientInfrastructureFailure(f"Shared store error: {data['error']}")
        return data.get("result")

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._command("GET", key)
        return json.loads(raw) if raw is not None else None

    async def put(self, key: str, value: Any, ttl_seconds: float) -> None:
        raw = json.dumps(value, default=str)
        await self._command("SET", key, raw, "PX", int(ttl_seconds * 1000))

    async def put_if_absent(self, key: str, value: Any, ttl_seconds: float) -> bool:
        raw = json.dumps(value, default=str)
        result = await self._command("SET", key, raw, "NX", "PX", int(ttl_seconds * 1000))
        return result == "OK"

    async def delete(self, key: str) -> None:
        await self._command("DEL", key)

"""Concurrency control utilities.

Provides per-key locking so that operations on the same resource (a vault
deposit transaction, a deposit being withdrawn) run one at a time within
the process. A key's lock lives only while some task holds or awaits it.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

logger = logging.getLogger(__name__)

# Global lock registry: key -> (asyncio.Lock, holders and waiters)
_key_locks: dict[str, tuple[asyncio.Lock, int]] = {}
_registry_lock = asyncio.Lock()


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


async def get_key_lock(key: str) -> asyncio.Lock:
    """Get or create the lock for a key and register the caller as a user.

    Every call must be paired with ``release_key_lock``.
    """
    async with _registry_lock:
        lock, users = _key_locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        _key_locks[key] = (lock, users + 1)
        return lock


def release_key_lock(key: str) -> None:
    """Unregister a user of ``key``; the lock is dropped with its last user."""
    entry = _key_locks.get(key)
    if entry is None:
        return
    lock, users = entry
    if users <= 1:
        del _key_locks[key]
    else:
        _key_locks[key] = (lock, users - 1)


@asynccontextmanager
async def keyed_lock(key: str, timeout: Optional[float] = 30.0, operation: str = "operation"):
    """Hold the lock for ``key`` for the duration of the block.

    Args:
        key: Resource key, e.g. "vault-deposit:0xabc:0x123"
        timeout: Maximum time to wait for the lock (None = wait forever)
        operation: Description for logging

    Example:
        async with keyed_lock(f"vault-withdraw:{deposit_id}", operation="withdraw"):
            ...
    """
    lock = await get_key_lock(key)
    try:
        try:
            if timeout:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            else:
                await lock.acquire()
        except asyncio.TimeoutError:
            logger.warning(f"Lock timeout for {key} after {timeout}s: {operation}")
            raise LockTimeoutError(f"Could not acquire lock for {key} within {timeout}s")

        logger.debug(f"Lock acquired for {key}: {operation}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"Lock released for {key}: {operation}")
    finally:
        release_key_lock(key)


def active_key_locks() -> int:
    """Number of keys currently held or awaited."""
    return len(_key_locks)


def clear_key_locks() -> None:
    """Clear all key locks (useful for testing)."""
    _key_locks.clear()

"""Tests for per-key locks."""

import asyncio

import pytest

from celofx.utils.locks import (
    LockTimeoutError,
    active_key_locks,
    get_key_lock,
    keyed_lock,
    release_key_lock,
)


class TestKeyedLock:
    """Tests for the keyed lock registry."""

    @pytest.mark.asyncio
    async def test_same_key_shares_lock(self):
        first = await get_key_lock("vault-withdraw:1")
        second = await get_key_lock("vault-withdraw:1")
        other = await get_key_lock("vault-withdraw:2")

        assert first is second
        assert first is not other
        for key in ("vault-withdraw:1", "vault-withdraw:1", "vault-withdraw:2"):
            release_key_lock(key)
        assert active_key_locks() == 0

    @pytest.mark.asyncio
    async def test_serialises_same_key(self):
        results = []

        async def task(name):
            async with keyed_lock("vault-deposit:0xabc:0x01", timeout=10.0, operation=name):
                results.append(f"{name}_start")
                await asyncio.sleep(0.05)
                results.append(f"{name}_end")

        await asyncio.gather(task("A"), task("B"))

        assert results in [
            ["A_start", "A_end", "B_start", "B_end"],
            ["B_start", "B_end", "A_start", "A_end"],
        ]

    @pytest.mark.asyncio
    async def test_released_keys_leave_registry(self):
        """One-off keys such as per-transaction deposits do not accumulate."""
        for i in range(50):
            async with keyed_lock(f"vault-deposit:0xabc:{i:#x}"):
                assert active_key_locks() == 1

        assert active_key_locks() == 0

    @pytest.mark.asyncio
    async def test_lock_kept_while_awaited(self):
        key = "vault-withdraw:7"
        entered = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with keyed_lock(key):
                entered.set()
                await release.wait()

        first = asyncio.create_task(holder())
        await entered.wait()
        waiter = asyncio.create_task(holder())
        await asyncio.sleep(0)

        lock = await get_key_lock(key)
        release_key_lock(key)
        assert lock.locked()

        release.set()
        await asyncio.gather(first, waiter)
        assert active_key_locks() == 0

    @pytest.mark.asyncio
    async def test_timeout_releases_registration(self):
        key = "vault-withdraw:9"

        async with keyed_lock(key):
            with pytest.raises(LockTimeoutError):
                async with keyed_lock(key, timeout=0.01):
                    pass
            assert active_key_locks() == 1

        assert active_key_locks() == 0

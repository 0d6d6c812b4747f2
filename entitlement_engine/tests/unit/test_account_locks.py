"""
Unit tests for AccountLockPool.
"""

import asyncio

import pytest

from entitlement_engine.services.account_locks import AccountLockPool, get_account_lock_pool


class TestAccountLockPool:
    """Tests for keyed locking."""

    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        pool = AccountLockPool()
        order = []

        async def worker(name):
            async with pool.hold("acct-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        pool = AccountLockPool()

        async with pool.hold("acct-1"):
            async with pool.hold("acct-2"):
                assert pool.is_locked("acct-1")
                assert pool.is_locked("acct-2")

    @pytest.mark.asyncio
    async def test_entries_dropped_when_released(self):
        pool = AccountLockPool()

        async with pool.hold("acct-1"):
            assert len(pool) == 1

        assert len(pool) == 0
        assert not pool.is_locked("acct-1")

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        pool = AccountLockPool()

        with pytest.raises(RuntimeError):
            async with pool.hold("acct-1"):
                raise RuntimeError("boom")

        assert len(pool) == 0

    def test_shared_pool(self):
        assert get_account_lock_pool() is get_account_lock_pool()

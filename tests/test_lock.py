"""LockManager unit tests."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from karatapp.core.errors import ConflictError
from karatapp.core.lock import MemoryLockManager, RedisLockManager, hold_lock

# ==================== MemoryLockManager ====================


@pytest.mark.asyncio
async def test_memory_lock_acquire_and_release():
    lm = MemoryLockManager()

    assert await lm.acquire("key:1", ttl=60)
    # taken
    assert not await lm.acquire("key:1", ttl=60)
    await lm.release("key:1")
    assert await lm.acquire("key:1", ttl=60)


@pytest.mark.asyncio
async def test_memory_lock_different_keys():
    lm = MemoryLockManager()

    assert await lm.acquire("key:1", ttl=60)
    assert await lm.acquire("key:2", ttl=60)


@pytest.mark.asyncio
async def test_memory_lock_expired_auto_release():
    lm = MemoryLockManager()

    assert await lm.acquire("key:1", ttl=0)
    await asyncio.sleep(0.01)
    assert await lm.acquire("key:1", ttl=60)


@pytest.mark.asyncio
async def test_memory_lock_release_idempotent():
    lm = MemoryLockManager()
    await lm.release("nonexistent")


@pytest.mark.asyncio
async def test_memory_lock_concurrent_acquire():
    lm = MemoryLockManager()
    results = await asyncio.gather(
        lm.acquire("key:1", ttl=60),
        lm.acquire("key:1", ttl=60),
        lm.acquire("key:1", ttl=60),
    )
    assert results.count(True) == 1
    assert results.count(False) == 2


# ==================== RedisLockManager ====================


@pytest.mark.asyncio
async def test_redis_lock_acquire_uses_set_nx():
    redis = AsyncMock()
    redis.set.return_value = True

    lm = RedisLockManager(redis)
    assert await lm.acquire("key:1", ttl=60)
    redis.set.assert_awaited_once_with("key:1", "1", ex=60, nx=True)


@pytest.mark.asyncio
async def test_redis_lock_acquire_fail():
    redis = AsyncMock()
    redis.set.return_value = None

    lm = RedisLockManager(redis)
    assert not await lm.acquire("key:1", ttl=60)


@pytest.mark.asyncio
async def test_redis_lock_release_deletes_key():
    redis = AsyncMock()
    lm = RedisLockManager(redis)

    await lm.release("key:1")
    redis.delete.assert_awaited_once_with("key:1")


# ==================== hold_lock ====================


@pytest.mark.asyncio
async def test_hold_lock_releases_after_block():
    lm = MemoryLockManager()

    async with hold_lock(lm, "like:u:kata:1"):
        assert not await lm.acquire("like:u:kata:1")
    assert await lm.acquire("like:u:kata:1")


@pytest.mark.asyncio
async def test_hold_lock_releases_on_error():
    lm = MemoryLockManager()

    with pytest.raises(RuntimeError):
        async with hold_lock(lm, "k"):
            raise RuntimeError("boom")
    assert await lm.acquire("k")


@pytest.mark.asyncio
async def test_hold_lock_times_out_with_conflict():
    lm = MemoryLockManager()
    await lm.acquire("k", ttl=60)

    with pytest.raises(ConflictError):
        async with hold_lock(lm, "k", timeout=0.05, poll_interval=0.01):
            pass


@pytest.mark.asyncio
async def test_hold_lock_waits_for_holder():
    lm = MemoryLockManager()
    order: list[str] = []

    async def holder():
        async with hold_lock(lm, "k"):
            order.append("first")
            await asyncio.sleep(0.05)

    async def waiter():
        await asyncio.sleep(0.01)
        async with hold_lock(lm, "k", poll_interval=0.01):
            order.append("second")

    await asyncio.gather(holder(), waiter())
    assert order == ["first", "second"]

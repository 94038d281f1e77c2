"""Short-lived keyed locks.

Used to serialise read-modify-write sequences on the row store, such as a
like toggle for one (user, target) pair or a mute change for one user.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Protocol

from .errors import ConflictError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    import redis.asyncio as redis


class LockManager(Protocol):
    async def acquire(self, key: str, ttl: int = 30) -> bool:
        """Try to take the lock.

        Args:
            key: lock key.
            ttl: expiry in seconds, so a crashed holder cannot block forever.

        Returns:
            True if the lock was taken.
        """
        ...

    async def release(self, key: str) -> None:
        """Release the lock (idempotent)."""
        ...


class RedisLockManager:
    """Lock manager backed by Redis ``SET NX EX``."""

    def __init__(self, redis_client: redis.Redis) -> None:
        self._redis = redis_client

    async def acquire(self, key: str, ttl: int = 30) -> bool:
        return bool(await self._redis.set(key, "1", ex=ttl, nx=True))

    async def release(self, key: str) -> None:
        await self._redis.delete(key)


class MemoryLockManager:
    """Single-process lock manager."""

    def __init__(self) -> None:
        self._locks: dict[str, float] = {}
        self._guard = asyncio.Lock()

    async def acquire(self, key: str, ttl: int = 30) -> bool:
        async with self._guard:
            now = time.monotonic()
            self._locks = {k: t for k, t in self._locks.items() if now <= t}

            if key in self._locks:
                return False

            self._locks[key] = now + ttl
            return True

    async def release(self, key: str) -> None:
        async with self._guard:
            self._locks.pop(key, None)


@asynccontextmanager
async def hold_lock(
    manager: LockManager,
    key: str,
    *,
    ttl: int = 30,
    timeout: float = 5.0,
    poll_interval: float = 0.05,
) -> AsyncIterator[None]:
    """Hold ``key`` for the duration of the block, waiting up to ``timeout``.

    Raises:
        ConflictError: if the lock could not be taken in time.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await manager.acquire(key, ttl=ttl):
        if loop.time() >= deadline:
            raise ConflictError("Another update is in progress. Please try again.")
        await asyncio.sleep(poll_interval)
    try:
        yield
    finally:
        await manager.release(key)

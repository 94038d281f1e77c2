"""Dependency injection container.

Owns every external resource the services use: the database engine, the
Redis client, the session/listing cache, the object store, the outbound HTTP
session with its rate limiter, the lock manager and the event publisher.
"""

from __future__ import annotations

import logging
from asyncio import Semaphore
from typing import TYPE_CHECKING

import aiohttp
import redis.asyncio as redis
from aiolimiter import AsyncLimiter
from cashews import Cache, add_prefix
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .lock import LockManager, MemoryLockManager, RedisLockManager
from .publisher import NoopPublisher, Publisher, RedisStreamsPublisher, WebSocketPublisher
from .storage import ObjectStore, create_object_store

if TYPE_CHECKING:
    from ..api.server import ApiServer
    from .config import Config

log = logging.getLogger("container")


class Container:
    """Dependency injection container.

    Attributes:
        config (Config): application configuration
        limiter (AsyncLimiter): outbound request rate limiter
        semaphore (Semaphore): outbound concurrency limit
        http_session (aiohttp.ClientSession): session for third-party HTTP APIs
        db_engine (AsyncEngine): SQLAlchemy async engine
        async_sessionmaker: session factory bound to ``db_engine``
        redis_client (redis.Redis): Redis client, only when a Redis-backed feature is enabled
        cache (Cache): cashews cache for session tokens and image listings
        object_store (ObjectStore): bucket storage
        lock_manager (LockManager): keyed locks for read-modify-write sequences
        publisher (Publisher): content event publisher
        api_server (ApiServer): HTTP/WebSocket surface, created in serve mode
    """

    def __init__(self, config: Config):
        self.config = config

        self.limiter: AsyncLimiter | None = None
        self.semaphore: Semaphore | None = None
        self.http_session: aiohttp.ClientSession | None = None
        self.db_engine: AsyncEngine | None = None
        self.async_sessionmaker: async_sessionmaker[AsyncSession] | None = None
        self.redis_client: redis.Redis | None = None
        self.cache: Cache | None = None
        self.object_store: ObjectStore | None = None
        self.lock_manager: LockManager | None = None
        self.publisher: Publisher | None = None
        self.api_server: ApiServer | None = None

    @property
    def needs_redis(self) -> bool:
        return self.config.cache_backend == "redis" or self.config.events_transport == "redis"

    async def setup(self):
        """Create all resources.

        On failure everything created so far is torn down and the error is
        re-raised.
        """
        log.info("Initializing container resources...")
        try:
            self.limiter = AsyncLimiter(1, time_period=1 / self.config.rps_limit)
            self.semaphore = Semaphore(self.config.concurrency_limit)
            log.info("AioLimiter initialized with a rate of %d RPS.", self.config.rps_limit)

            self.http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.auth.breach_timeout_seconds)
            )

            self.db_engine = create_async_engine(self.config.database_url, echo=self.config.database_echo)
            self.async_sessionmaker = async_sessionmaker(
                bind=self.db_engine, class_=AsyncSession, expire_on_commit=False
            )
            log.info("Database AsyncEngine created.")

            if self.needs_redis:
                self.redis_client = await redis.from_url(self.config.redis_url, decode_responses=False)
                await self.redis_client.ping()  # type: ignore
                log.info("Redis client connected successfully.")

            self.cache = Cache()
            if self.config.cache_backend == "redis":
                self.cache.setup(
                    self.config.redis_url,
                    middlewares=(add_prefix("karatapp:"),),
                    client_side=True,
                )
            else:
                self.cache.setup(f"mem://?size={self.config.cache_max_size}")

            self.object_store = create_object_store(self.config.storage)
            log.info("Object store ready (%s backend).", self.config.storage.backend)

            if self.redis_client is not None:
                self.lock_manager = RedisLockManager(self.redis_client)
            else:
                self.lock_manager = MemoryLockManager()

            if self.config.mode == "serve" or self.config.events_transport == "websocket":
                from ..api.server import ApiServer

                self.api_server = ApiServer(self)

            self.publisher = self._build_publisher()

            log.info("Container resources initialized successfully.")

        except Exception as e:
            log.exception("Failed to initialize container resources: %s", e)
            await self.teardown()
            raise

    def _build_publisher(self) -> Publisher:
        transport = self.config.events_transport
        if transport == "redis":
            assert self.redis_client is not None
            return RedisStreamsPublisher(self.redis_client, events_config=self.config.events)
        if transport == "websocket":
            return WebSocketPublisher(server=self.api_server, events_config=self.config.events)
        return NoopPublisher()

    async def teardown(self):
        """Release all resources in reverse order. Safe to call more than once."""
        log.info("Tearing down container resources...")

        if self.publisher is not None:
            await self.publisher.close()
            self.publisher = None
        if self.api_server is not None:
            await self.api_server.stop()
            self.api_server = None
        if self.cache is not None:
            await self.cache.close()
            self.cache = None
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
            log.info("Redis client closed.")
        if self.db_engine is not None:
            await self.db_engine.dispose()
            self.db_engine = None
            self.async_sessionmaker = None
            log.info("Database AsyncEngine disposed.")
        if self.http_session is not None:
            await self.http_session.close()
            self.http_session = None

        log.info("Container resources torn down successfully.")

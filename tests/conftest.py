"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
import pytest_asyncio
from cashews import Cache
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from karatapp.api import ApiServer
from karatapp.core.config import Config
from karatapp.core.container import Container
from karatapp.core.lock import MemoryLockManager
from karatapp.core.publisher import RecordingPublisher
from karatapp.core.storage import MemoryObjectStore
from karatapp.models.enums import UserRole
from karatapp.models.models import Base, UserAccount, UserProfile, UserRoleAssignment, new_uuid, utcnow
from karatapp.models.schemas import AuthUser

# ==================== Container ====================


def make_config(**overrides: Any) -> Config:
    """Configuration for tests: in-memory storage and cache, no breach lookups."""
    sections: dict[str, Any] = {
        "storage": {"backend": "memory", "signing_secret": "test-secret"},
        "auth": {"breach_check": False},
        "cache": {"backend": "memory"},
        "events": {"transport": "none"},
    }
    sections.update(overrides)
    return Config(mode="init", **sections)


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def container(db_engine):
    """A container wired to SQLite, an in-memory bucket store and an in-memory cache."""
    config = make_config()
    c = Container(config)
    c.db_engine = db_engine
    c.async_sessionmaker = async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)
    buckets = config.buckets
    c.object_store = MemoryObjectStore(
        public_base_url=config.storage.public_base_url,
        signing_secret=config.storage.signing_secret,
        buckets=[
            buckets.kata_images,
            buckets.ohyo_images,
            buckets.avatars,
            buckets.forum_images[-1],
            buckets.forum_files[-1],
        ],
    )
    c.cache = Cache()
    c.cache.setup("mem://")
    c.lock_manager = MemoryLockManager()
    c.publisher = RecordingPublisher()
    c.semaphore = asyncio.Semaphore(4)
    yield c
    await c.cache.clear()


@pytest.fixture
def publisher(container) -> RecordingPublisher:
    return container.publisher


# ==================== Users ====================


async def create_user(
    container: Container,
    email: str = "user@example.com",
    *,
    full_name: str | None = "Test User",
    role: UserRole = UserRole.USER,
    metadata: dict[str, Any] | None = None,
) -> AuthUser:
    """Insert an account with profile and role directly, skipping password hashing."""
    user_metadata = dict(metadata or {})
    if full_name:
        user_metadata.setdefault("full_name", full_name)
    user_id = new_uuid()
    async with container.async_sessionmaker() as session:
        session.add(UserAccount(id=user_id, email=email, password_hash="x", user_metadata=user_metadata))
        session.add(UserProfile(id=user_id, email=email, full_name=full_name, created_at=utcnow()))
        session.add(UserRoleAssignment(user_id=user_id, role=role.value, granted_at=utcnow()))
        await session.commit()
    return AuthUser(id=user_id, email=email, user_metadata=user_metadata)


@pytest_asyncio.fixture
async def user(container) -> AuthUser:
    return await create_user(container, "karateka@example.com", full_name="Karateka")


@pytest_asyncio.fixture
async def other_user(container) -> AuthUser:
    return await create_user(container, "other@example.com", full_name="Other")


@pytest_asyncio.fixture
async def host(container) -> AuthUser:
    return await create_user(container, "host@example.com", full_name="Host", role=UserRole.HOST)


@pytest_asyncio.fixture
async def mediator(container) -> AuthUser:
    return await create_user(container, "mediator@example.com", full_name="Mediator", role=UserRole.MEDIATOR)


@pytest.fixture
def make_user(container):
    """Factory for extra users: ``await make_user("a@example.com", role=UserRole.HOST)``."""

    async def factory(email: str, **kwargs: Any) -> AuthUser:
        return await create_user(container, email, **kwargs)

    return factory


# ==================== API ====================


@pytest_asyncio.fixture
async def api_server(container):
    """An ApiServer bound to an ephemeral local port."""
    container.config = make_config(server={"host": "127.0.0.1", "port": 0, "metrics_port": None})
    server = ApiServer(container)
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
def api_url(api_server) -> str:
    return f"http://127.0.0.1:{api_server.port}"

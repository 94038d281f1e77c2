import os

import orjson
import pytest
import redis.asyncio as redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from karatapp.core.config import EventsConfig
from karatapp.core.lock import RedisLockManager
from karatapp.core.publisher import RedisStreamsPublisher, build_envelope
from karatapp.models.models import Base, Kata, Like

ON_CI = os.getenv("CI", "").lower() == "true" or os.getenv("GITHUB_ACTIONS") == "true"


@pytest.mark.skipif(not ON_CI, reason="Integration test only runs on CI")
@pytest.mark.asyncio
async def test_postgres_and_redis_live_roundtrip():
    pg_user = os.getenv("PGUSER") or os.getenv("DB_USER", "postgres")
    pg_password = os.getenv("PGPASSWORD") or os.getenv("DB_PASSWORD", "postgres")
    pg_host = os.getenv("PGHOST") or os.getenv("DB_HOST", "127.0.0.1")
    pg_port = int(os.getenv("PGPORT") or os.getenv("DB_PORT", "5432"))
    pg_db = os.getenv("PGDATABASE") or os.getenv("DB_NAME", "karatapp")

    dsn = f"postgresql+asyncpg://{pg_user}:{pg_password}@{pg_host}:{pg_port}/{pg_db}"
    engine = create_async_engine(dsn, echo=False)
    session_maker = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    events = EventsConfig(transport="redis", stream_prefix="ci:events", max_len=3, max_retries=3, retry_backoff_ms=50)

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        async with session_maker() as sess:
            sess.add(Kata(id=99999, name="ci-kata", description="", style="Basis", image_urls=["a"], order=0))
            sess.add(Like(user_id="ci-user", target_type="kata", target_id=99999))
            await sess.commit()

        async with session_maker() as sess:
            kata = (await sess.execute(select(Kata).where(Kata.id == 99999))).scalar_one()
            assert kata.name == "ci-kata"
            assert kata.image_urls == ["a"]
            assert kata.created_at.tzinfo is not None

        rurl = f"redis://{os.getenv('REDIS_HOST', '127.0.0.1')}:{int(os.getenv('REDIS_PORT', '6379'))}/0"
        r = redis.from_url(rurl)
        stream_key = f"{events.stream_prefix}:kata"
        try:
            await r.ping()

            locks = RedisLockManager(r)
            assert await locks.acquire("ci:lock", ttl=5)
            assert not await locks.acquire("ci:lock", ttl=5)
            await locks.release("ci:lock")

            pub = RedisStreamsPublisher(r, events_config=events)
            for kata_id in (1, 2, 3, 4, 5):
                await pub.publish(build_envelope("kata", "updated", kata_id, {"id": kata_id}))

            entries = await r.xrevrange(stream_key, count=1)
            newest = orjson.loads(entries[0][1][b"data"])
            assert newest["object_id"] == 5
            assert newest["schema"] == "karatapp.kata.v1"

            # approximate trimming may keep a few extra entries
            assert await r.xlen(stream_key) <= events.max_len + 2
        finally:
            await r.delete(stream_key, "ci:lock")
            await r.aclose()
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()

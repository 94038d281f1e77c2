import pytest

from karatapp.core.initialize import create_tables, ensure_buckets, ensure_user_profiles
from karatapp.models.models import UserAccount


@pytest.mark.asyncio
async def test_ensure_buckets_creates_first_candidates(container):
    store = container.object_store
    assert not await store.bucket_exists("FORUM_IMAGES")

    await ensure_buckets(container)
    await ensure_buckets(container)

    for name in ("kata_images", "ohyo_images", "user-avatars", "FORUM_IMAGES", "FORUM_FILES"):
        assert await store.bucket_exists(name)


@pytest.mark.asyncio
async def test_create_tables_and_backfill_profiles(container):
    await create_tables(container)
    async with container.async_sessionmaker() as session:
        session.add(UserAccount(id="legacy", email="legacy@example.com", password_hash="x", user_metadata={}))
        await session.commit()

    assert await ensure_user_profiles(container) == 1
    assert await ensure_user_profiles(container) == 0


@pytest.mark.asyncio
async def test_missing_resources_are_reported(container):
    container.object_store = None
    with pytest.raises(RuntimeError, match="not set up properly"):
        await ensure_buckets(container)

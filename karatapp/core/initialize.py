"""Startup tasks: configuration, container, tables, buckets and profiles."""

from __future__ import annotations

import logging

from ..models.models import Base
from .config import Config, RunMode
from .container import Container

log = logging.getLogger("initialize")


async def initialize_application(mode: RunMode = "serve", **overrides) -> Container:
    """Load the configuration, set up the container and prepare the stores.

    Args:
        mode: process run mode.
        **overrides: configuration section overrides passed to ``Config``.

    Returns:
        The ready container.
    """
    log.info("Initializing application in '%s' mode...", mode)

    config = Config(mode=mode, **overrides)

    container = Container(config=config)
    await container.setup()

    try:
        await create_tables(container)
        await ensure_buckets(container)
        if mode == "init":
            await ensure_user_profiles(container)
    except Exception:
        await container.teardown()
        raise

    log.info("Application initialized successfully.")
    return container


async def create_tables(container: Container) -> None:
    """Create all ORM tables that do not exist yet."""
    log.info("Initializing database tables...")

    if container.db_engine is None:
        raise RuntimeError("Container is not set up properly.")

    try:
        async with container.db_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        log.exception("Failed to create database tables: %s", e)
        raise

    log.info("Database tables created successfully.")


async def ensure_buckets(container: Container) -> None:
    """Create the configured buckets.

    Only the first candidate of the forum bucket lists is created; the
    others are looked up at upload time.
    """
    store = container.object_store
    if store is None:
        raise RuntimeError("Container is not set up properly.")

    buckets = container.config.buckets
    for name in (
        buckets.kata_images,
        buckets.ohyo_images,
        buckets.avatars,
        buckets.forum_images[0],
        buckets.forum_files[0],
    ):
        if not await store.bucket_exists(name):
            await store.create_bucket(name)
            log.info("Created bucket %s", name)


async def ensure_user_profiles(container: Container) -> int:
    """Create profiles (with the default role) for accounts that lack one."""
    from ..services.roles import RoleService

    created = await RoleService(container).create_missing_user_profiles()
    log.info("Backfilled %d user profiles.", created)
    return created

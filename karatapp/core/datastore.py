"""Row store access.

``DataStore`` wraps the session factory of the container with transaction
handling and a few helpers that record database metrics.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .metrics import DB_OPERATIONS

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession

    from ..models.models import MixinBase
    from .container import Container

log = logging.getLogger("datastore")


class DataStore:
    """Database access layer.

    Attributes:
        container (Container): dependency container
        async_sessionmaker: session factory
    """

    def __init__(self, container: Container):
        self.container = container
        if container.async_sessionmaker is None:
            raise RuntimeError("Container is not set up properly.")
        self.async_sessionmaker = container.async_sessionmaker

    @asynccontextmanager
    async def get_session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session; roll back and re-raise on any error inside the block."""
        async with self.async_sessionmaker() as session:
            try:
                yield session
            except Exception as e:
                log.debug("Rolling back database session: %s", e)
                await session.rollback()
                raise

    async def add[T: MixinBase](self, item: T) -> T:
        """Insert one row and return it with generated columns loaded."""
        table = item.__tablename__
        async with self.get_session() as session:
            try:
                session.add(item)
                await session.commit()
                await session.refresh(item)
            except IntegrityError:
                DB_OPERATIONS.labels(operation="insert", table=table, status="integrity_error").inc()
                raise
            except SQLAlchemyError:
                DB_OPERATIONS.labels(operation="insert", table=table, status="error").inc()
                raise
        DB_OPERATIONS.labels(operation="insert", table=table, status="success").inc()
        return item

    async def get[T: MixinBase](self, model: type[T], item_id: Any) -> T | None:
        async with self.get_session() as session:
            return await session.get(model, item_id)

    async def delete[T: MixinBase](self, model: type[T], item_id: Any) -> bool:
        """Delete a row by primary key. Returns False when it did not exist."""
        table = model.__tablename__
        async with self.get_session() as session:
            item = await session.get(model, item_id)
            if item is None:
                return False
            try:
                await session.delete(item)
                await session.commit()
            except SQLAlchemyError:
                DB_OPERATIONS.labels(operation="delete", table=table, status="error").inc()
                raise
        DB_OPERATIONS.labels(operation="delete", table=table, status="success").inc()
        return True

    @staticmethod
    def record(operation: str, table: str, status: str = "success") -> None:
        DB_OPERATIONS.labels(operation=operation, table=table, status=status).inc()

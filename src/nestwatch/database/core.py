import contextlib
import logging
from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,  # type: ignore[attr-defined]
    create_async_engine,
)

from nestwatch.config.models import DatabaseConfig

logger = logging.getLogger(__name__)


class DatabaseService:
    """Owns an async engine and hands out sessions."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.db_url = config.sqlalchemy_url()

        engine_options: dict[str, Any] = {"pool_pre_ping": True}
        if not self.db_url.startswith("sqlite"):
            engine_options.update(
                pool_size=config.max_pool_size,
                max_overflow=0,
                pool_recycle=3600,  # MySQL drops idle connections
            )
        self.async_engine = create_async_engine(self.db_url, **engine_options)

        self.async_session_local = async_sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.async_engine,
            class_=AsyncSession,
        )

    @contextlib.asynccontextmanager
    async def get_async_db(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide an async database session."""
        async with self.async_session_local() as session:
            yield session

    async def dispose(self) -> None:
        """Dispose of the engine and its connection pool."""
        if self.async_engine:
            await self.async_engine.dispose()
            logger.debug("Async database engine disposed for %s", self.async_engine.url.database)

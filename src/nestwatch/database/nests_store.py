"""Access to the nests database."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable, Iterable, Sequence
from pathlib import Path
from typing import Any

from alembic import command
from alembic.config import Config as AlembicConfig
from sqlalchemy import Connection, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from nestwatch.database.core import DatabaseService
from nestwatch.database.models import NestRow, NestUpdate
from nestwatch.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

STREAM_BATCH_SIZE = 1000
GET_BATCH_SIZE = 500

# Columns an import replaces on an existing nest. The nesting pokemon stays.
IMPORT_UPDATE_FIELDS = (
    "lat",
    "lon",
    "name",
    "polygon",
    "area_name",
    "spawnpoints",
    "m2",
    "active",
    "discarded",
    "updated",
)

NO_POLYGON_COLUMNS = tuple(c for c in NestRow.__table__.columns if c.name != "polygon")  # type: ignore[attr-defined]


def alembic_config(connection: Connection | None = None) -> AlembicConfig:
    """Build an Alembic config pointing at the bundled migrations."""
    cfg = AlembicConfig()
    cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    if connection is not None:
        cfg.attributes["connection"] = connection
    return cfg


class NestsStore(DatabaseService):
    """Reads and writes nests."""

    async def initialize(self) -> None:
        """Bring the schema up to date."""
        try:
            async with self.async_engine.begin() as conn:
                await conn.run_sync(self._upgrade)
        except SQLAlchemyError as e:
            logger.error("Error migrating nests database: %s", e)
            raise StoreUnavailableError(f"failed to migrate nests database: {e}") from e
        logger.info("Nests database schema is up to date")

    @staticmethod
    def _upgrade(connection: Connection) -> None:
        command.upgrade(alembic_config(connection), "head")

    @contextlib.asynccontextmanager
    async def _session(self, action: str) -> AsyncGenerator[AsyncSession, None]:
        async with self.get_async_db() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("Error %s: %s", action, e)
                raise StoreUnavailableError(f"error {action}: {e}") from e

    async def insert_or_update(self, nest: NestRow) -> None:
        """Insert a nest, or update an existing one keeping its nesting pokemon."""
        async with self._session(f"saving nest {nest.nest_id}") as session:
            existing = await session.get(NestRow, nest.nest_id)
            if existing is None:
                session.add(NestRow(**nest.model_dump()))
            else:
                for field in IMPORT_UPDATE_FIELDS:
                    setattr(existing, field, getattr(nest, field))
            await session.commit()

    async def update_nest_partial(self, nest_id: int, nest_update: NestUpdate) -> None:
        """Write only the fields set on ``nest_update``."""
        values = nest_update.values()
        if not values:
            return
        logger.debug("Running partial nest DB update for %d: %r", nest_id, values)
        async with self._session(f"updating nest {nest_id}") as session:
            stmt = update(NestRow).where(NestRow.nest_id == nest_id).values(**values)  # type: ignore[arg-type]
            await session.execute(stmt)
            await session.commit()

    async def get_by_id(self, nest_id: int) -> NestRow | None:
        async with self._session(f"retrieving nest {nest_id}") as session:
            return await session.get(NestRow, nest_id)

    async def get_all(self) -> list[NestRow]:
        return await self._get_many("retrieving all nests")

    async def get_active(self) -> list[NestRow]:
        return await self._get_many("retrieving active nests", NestRow.active.is_(True))  # type: ignore[union-attr]

    async def get_inactive(self) -> list[NestRow]:
        return await self._get_many(
            "retrieving inactive nests",
            NestRow.active.is_not(True),  # type: ignore[union-attr]
        )

    async def _get_many(self, action: str, *criteria: Any) -> list[NestRow]:
        async with self._session(action) as session:
            stmt = select(NestRow).where(*criteria).order_by(NestRow.nest_id)
            result = await session.execute(stmt)
            return list(result.scalars())

    async def get_nest_areas(self) -> list[str]:
        """Return the distinct area names in use."""
        async with self._session("retrieving nest areas") as session:
            stmt = (
                select(NestRow.area_name)
                .where(NestRow.area_name.is_not(None))  # type: ignore[union-attr]
                .distinct()
                .order_by(NestRow.area_name)
            )
            result = await session.execute(stmt)
            return [area for area in result.scalars() if area]

    async def get_nests_without_polygon(self, nest_ids: Iterable[int]) -> dict[int, NestRow]:
        """Look up nests by id, skipping the polygon column."""
        ids = list(nest_ids)
        nests: dict[int, NestRow] = {}
        async with self._session("retrieving nests by id") as session:
            for start in range(0, len(ids), GET_BATCH_SIZE):
                batch = ids[start : start + GET_BATCH_SIZE]
                stmt = select(*NO_POLYGON_COLUMNS).where(NestRow.nest_id.in_(batch))  # type: ignore[attr-defined]
                result = await session.execute(stmt)
                for row in result:
                    nest = NestRow(**row._mapping)
                    nests[nest.nest_id] = nest
        return nests

    async def stream_nests(
        self,
        include_polygon: bool = True,
        active_only: bool = False,
        batch_size: int = STREAM_BATCH_SIZE,
    ) -> AsyncGenerator[NestRow, None]:
        """Yield every nest ordered by id, fetching a page at a time."""
        last_id: int | None = None
        while True:
            async with self._session("streaming nests") as session:
                stmt = select(NestRow) if include_polygon else select(*NO_POLYGON_COLUMNS)
                if last_id is not None:
                    stmt = stmt.where(NestRow.nest_id > last_id)  # type: ignore[operator]
                if active_only:
                    stmt = stmt.where(NestRow.active.is_(True))  # type: ignore[union-attr]
                stmt = stmt.order_by(NestRow.nest_id).limit(batch_size)
                result = await session.execute(stmt)
                if include_polygon:
                    page: Sequence[NestRow] = list(result.scalars())
                else:
                    page = [NestRow(**row._mapping) for row in result]

            for nest in page:
                yield nest
            if len(page) < batch_size:
                return
            last_id = page[-1].nest_id

    async def iterate_concurrently(
        self,
        fn: Callable[[NestRow], Awaitable[None]],
        concurrency: int = 2,
        include_polygon: bool = True,
    ) -> None:
        """Call ``fn`` for every nest using ``concurrency`` workers.

        The first failure cancels the remaining work and is re-raised.
        """
        if concurrency <= 0:
            concurrency = 2

        queue: asyncio.Queue[NestRow | None] = asyncio.Queue(maxsize=64)

        async def produce() -> None:
            async for nest in self.stream_nests(include_polygon=include_polygon):
                await queue.put(nest)
            for _ in range(concurrency):
                await queue.put(None)

        async def work() -> None:
            while (nest := await queue.get()) is not None:
                await fn(nest)

        tasks = [asyncio.create_task(produce())]
        tasks.extend(asyncio.create_task(work()) for _ in range(concurrency))
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

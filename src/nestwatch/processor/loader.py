import logging
from typing import Protocol

from nestwatch.database.models import NestRow
from nestwatch.errors import GeometryInvalidError
from nestwatch.processor.models import Nest

logger = logging.getLogger(__name__)


class NestSource(Protocol):
    async def get_all(self) -> list[NestRow]: ...


class DBNestLoader:
    """Loads every nest from the nests database."""

    name = "db"

    def __init__(self, nests_store: NestSource):
        self.nests_store = nests_store

    async def load_nests(self) -> list[Nest]:
        nests = []
        for row in await self.nests_store.get_all():
            try:
                nests.append(Nest.from_row(row))
            except GeometryInvalidError as e:
                logger.warning("skipping nest %d/%s: %s", row.nest_id, row.name, e)
        return nests

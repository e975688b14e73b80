"""Read-only access to golbat's spawnpoints."""

import logging
from datetime import timedelta

import shapely
from shapely.geometry import MultiPolygon, Polygon
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from nestwatch.database.core import DatabaseService
from nestwatch.database.models import spawnpoint_table
from nestwatch.errors import StoreUnavailableError
from nestwatch.processor.models import to_epoch, utcnow

logger = logging.getLogger(__name__)

RECENT_DAYS = 7


class PointsStore(DatabaseService):
    """Counts recently seen spawnpoints inside a geofence."""

    async def points_contained_count(
        self, geometry: Polygon | MultiPolygon, since_days: int = RECENT_DAYS
    ) -> int:
        """Count spawnpoints seen in the last ``since_days`` days inside ``geometry``.

        Raises:
            StoreUnavailableError: If the query fails
        """
        min_lon, min_lat, max_lon, max_lat = geometry.bounds
        since = to_epoch(utcnow() - timedelta(days=since_days))
        sp = spawnpoint_table.c
        stmt = select(sp.lat, sp.lon).where(
            sp.lat > min_lat,
            sp.lon > min_lon,
            sp.lat < max_lat,
            sp.lon < max_lon,
            sp.last_seen > since,
        )

        async with self.get_async_db() as session:
            try:
                result = await session.execute(stmt)
                rows = result.all()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("Error counting spawnpoints: %s", e)
                raise StoreUnavailableError(f"error counting spawnpoints: {e}") from e

        if not rows:
            return 0
        lats = [row.lat for row in rows]
        lons = [row.lon for row in rows]
        return int(shapely.contains_xy(geometry, lons, lats).sum())

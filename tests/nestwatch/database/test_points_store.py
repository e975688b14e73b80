"""Tests for counting golbat spawnpoints inside nests."""

from datetime import timedelta

import pytest
import pytest_asyncio

from nestwatch.config.models import DatabaseConfig
from nestwatch.database.models import golbat_metadata, spawnpoint_table
from nestwatch.database.points_store import PointsStore
from nestwatch.errors import StoreUnavailableError
from nestwatch.geo.geometry import parse_geometry
from nestwatch.processor.models import to_epoch, utcnow


@pytest_asyncio.fixture
async def points_store(tmp_path):
    """Provide a PointsStore over a sqlite copy of golbat's spawnpoint table."""
    store = PointsStore(DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'golbat.db'}"))
    async with store.async_engine.begin() as conn:
        await conn.run_sync(golbat_metadata.create_all)
    try:
        yield store
    finally:
        await store.dispose()


async def add_spawnpoints(store: PointsStore, points: list[tuple[float, float, int]]) -> None:
    async with store.async_engine.begin() as conn:
        await conn.execute(
            spawnpoint_table.insert(),
            [
                {"id": i, "lat": lat, "lon": lon, "last_seen": last_seen}
                for i, (lat, lon, last_seen) in enumerate(points, start=1)
            ],
        )


class TestPointsStore:
    """Test spawnpoint counts."""

    @pytest.mark.asyncio
    async def test_counts_recent_points_inside(self, points_store, square):
        """Should count only recently seen spawnpoints inside the geofence."""
        recent = to_epoch(utcnow() - timedelta(days=1))
        stale = to_epoch(utcnow() - timedelta(days=30))
        await add_spawnpoints(
            points_store,
            [
                (40.0, -74.0, recent),
                (40.0002, -74.0002, recent),
                (40.0001, -74.0001, stale),
                (40.01, -74.0, recent),
            ],
        )
        geometry = parse_geometry(square(40.0, -74.0))

        assert await points_store.points_contained_count(geometry) == 2
        assert await points_store.points_contained_count(geometry, since_days=60) == 3

    @pytest.mark.asyncio
    async def test_bounding_box_only_is_not_counted(self, points_store):
        """Should drop points inside the bounding box but outside the polygon."""
        recent = to_epoch(utcnow())
        await add_spawnpoints(points_store, [(0.1, 0.9, recent), (0.9, 0.1, recent)])
        triangle = parse_geometry(
            {"type": "Polygon", "coordinates": [[[0, 0], [0, 1], [1, 1], [0, 0]]]}
        )

        assert await points_store.points_contained_count(triangle) == 1

    @pytest.mark.asyncio
    async def test_empty(self, points_store, square):
        """Should return 0 when there are no spawnpoints."""
        geometry = parse_geometry(square(40.0, -74.0))

        assert await points_store.points_contained_count(geometry) == 0

    @pytest.mark.asyncio
    async def test_missing_table(self, tmp_path, square):
        """Should raise StoreUnavailableError when the query fails."""
        store = PointsStore(DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}"))
        geometry = parse_geometry(square(40.0, -74.0))

        with pytest.raises(StoreUnavailableError):
            await store.points_contained_count(geometry)
        await store.dispose()

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
import structlog
import yaml

from nestwatch.config.models import DatabaseConfig, NestwatchConfig, ProcessorConfig
from nestwatch.database.nests_store import NestsStore
from nestwatch.geo.geometry import parse_geometry
from nestwatch.processor.models import Nest

START_TIME = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)


def square_geojson(lat: float, lon: float, size: float = 0.001) -> dict[str, Any]:
    """Return a closed GeoJSON Polygon with ``(lat, lon)`` at its center."""
    half = size / 2
    ring = [
        [lon - half, lat - half],
        [lon + half, lat - half],
        [lon + half, lat + half],
        [lon - half, lat + half],
        [lon - half, lat - half],
    ]
    return {"type": "Polygon", "coordinates": [ring]}


class FakeClock:
    """A settable clock for anything taking ``clock=``."""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """Provide a clock starting at a fixed time."""
    return FakeClock()


@pytest.fixture
def square() -> Callable[..., dict[str, Any]]:
    """Provide the square polygon factory."""
    return square_geojson


@pytest.fixture
def make_nest() -> Callable[..., Nest]:
    """Provide a factory for in-memory nests with square geofences."""

    def _make_nest(
        nest_id: int = 1,
        lat: float = 40.0,
        lon: float = -74.0,
        size: float = 0.001,
        name: str | None = None,
        area_name: str | None = "Metro/Downtown",
        **kwargs: Any,
    ) -> Nest:
        geometry = parse_geometry(square_geojson(lat, lon, size))
        nest = Nest.from_geometry(nest_id, name or f"Park {nest_id}", geometry, area_name)
        for key, value in kwargs.items():
            setattr(nest, key, value)
        return nest

    return _make_nest


@pytest.fixture
def processor_config() -> ProcessorConfig:
    """Provide a processor config with small thresholds that tests can reach."""
    return ProcessorConfig(
        rotation_interval_minutes=15,
        min_history_duration_hours=1,
        max_history_duration_hours=12,
        min_nest_observations=4,
        min_nest_pct=12.0,
        min_total_observations=12,
        max_global_pct=15.0,
        min_nest_to_global_ratio=8.0,
        skip_period_min_global_pct=40.0,
        no_nesting_age_hours=12,
    )


@pytest.fixture
def nestwatch_config(tmp_path) -> NestwatchConfig:
    """Provide a full config pointing at a temporary sqlite nests database."""
    return NestwatchConfig(
        nests_db=DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'nests.db'}"),
    )


@pytest.fixture
def config_file(tmp_path) -> Callable[[dict[str, Any]], Any]:
    """Provide a helper writing a YAML config file and returning its path."""

    def _write(data: dict[str, Any]):
        path = tmp_path / "nestwatch.yaml"
        path.write_text(yaml.safe_dump(data))
        return path

    return _write


@pytest_asyncio.fixture
async def nests_store(tmp_path):
    """Provide a migrated NestsStore backed by a temporary sqlite file."""
    store = NestsStore(DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'nests.db'}"))
    await store.initialize()
    try:
        yield store
    finally:
        await store.dispose()


@pytest.fixture(autouse=True)
def restore_logging():
    """Undo configure_structlog() calls made by CLI and daemon entry points."""
    root_logger = logging.getLogger()
    level = root_logger.level
    yield
    for handler in root_logger.handlers[:]:
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            root_logger.removeHandler(handler)
    root_logger.setLevel(level)
    structlog.reset_defaults()

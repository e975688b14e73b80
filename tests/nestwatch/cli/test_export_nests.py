"""Tests for the nest export CLI."""

import io
import json

import pytest
import pytest_asyncio
from click.testing import CliRunner

from nestwatch.cli.export_nests import export_nest, export_nests, export_nests_command
from nestwatch.database.models import NestRow
from nestwatch.errors import NotFoundError


@pytest.fixture
def make_row(square):
    """Provide a factory for stored nests."""

    def _make_row(nest_id: int, area_name: str | None = "Metro/Downtown", **kwargs) -> NestRow:
        values = {
            "nest_id": nest_id,
            "lat": 40.0,
            "lon": -74.0,
            "name": f"Park {nest_id}",
            "polygon": json.dumps(square(40.0 + nest_id, -74.0)),
            "area_name": area_name,
            "active": True,
        }
        values.update(kwargs)
        return NestRow(**values)

    return _make_row


@pytest_asyncio.fixture
async def stored_nests(nests_store, make_row):
    """Store nests across two areas, one inactive and one without a polygon."""
    for row in [
        make_row(1),
        make_row(2, area_name="Metro/Uptown"),
        make_row(3, active=False, discarded="area"),
        make_row(4, polygon=None),
    ]:
        await nests_store.insert_or_update(row)
    return nests_store


class TestExportNests:
    """Test exporting a feature collection."""

    @pytest.mark.asyncio
    async def test_active_nests(self, stored_nests):
        """Should export active nests with polygons and count them per area."""
        out = io.StringIO()

        areas = await export_nests(stored_nests, out)

        collection = json.loads(out.getvalue())
        assert collection["type"] == "FeatureCollection"
        assert [f["properties"]["id"] for f in collection["features"]] == [1, 2]
        assert areas == {"Downtown": 1, "Uptown": 1}

    @pytest.mark.asyncio
    async def test_include_inactive(self, stored_nests):
        """Should include inactive nests when asked."""
        out = io.StringIO()

        areas = await export_nests(stored_nests, out, include_inactive=True)

        assert areas == {"Downtown": 2, "Uptown": 1}

    @pytest.mark.asyncio
    async def test_single_area(self, stored_nests):
        """Should export one area, matched on the last part of the area name."""
        out = io.StringIO()

        await export_nests(stored_nests, out, area="Uptown")

        features = json.loads(out.getvalue())["features"]
        assert [f["properties"]["id"] for f in features] == [2]

    @pytest.mark.asyncio
    async def test_empty(self, nests_store):
        """Should write an empty collection when there is nothing to export."""
        out = io.StringIO()

        assert await export_nests(nests_store, out) == {}
        assert json.loads(out.getvalue()) == {"type": "FeatureCollection", "features": []}


class TestExportNest:
    """Test exporting one nest."""

    @pytest.mark.asyncio
    async def test_export_nest(self, stored_nests):
        """Should write the nest as a single Feature."""
        out = io.StringIO()

        await export_nest(stored_nests, 2, out)

        feature = json.loads(out.getvalue())
        assert feature["type"] == "Feature"
        assert feature["properties"] == {"name": "Park 2", "id": 2, "parent": "Metro/Uptown"}

    @pytest.mark.asyncio
    async def test_missing_nest(self, stored_nests):
        """Should raise NotFoundError for unknown ids."""
        with pytest.raises(NotFoundError):
            await export_nest(stored_nests, 99, io.StringIO())


class TestExportCommand:
    """Test command line validation."""

    @pytest.mark.parametrize(
        "args",
        [
            pytest.param([], id="none"),
            pytest.param(["--all-areas", "--area", "Uptown"], id="two"),
            pytest.param(["--area", "Uptown", "--nest-id", "2"], id="area-and-nest"),
        ],
    )
    def test_needs_exactly_one_selection(self, args):
        """Should refuse anything but exactly one selection."""
        result = CliRunner().invoke(export_nests_command, args)

        assert result.exit_code == 2
        assert "exactly one of --all-areas, --area or --nest-id is required" in result.output

    def test_invalid_config(self, config_file):
        """Should exit 1 when the config file is invalid."""
        path = config_file({"processor": {"min_history_duration_hours": 0}})

        result = CliRunner().invoke(export_nests_command, ["-f", str(path), "--all-areas"])

        assert result.exit_code == 1

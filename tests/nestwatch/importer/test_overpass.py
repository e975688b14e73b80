"""Tests for finding possible nests through Overpass."""

from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs

import httpx
import pytest
from shapely.geometry import Polygon

from nestwatch.errors import FeatureSourceError
from nestwatch.importer.overpass import (
    OverpassClient,
    OverpassDuplicateQueryError,
    OverpassSource,
    OverpassTimeoutError,
    adjust_feature_properties,
    error_from_body,
    find_area,
    osm_geometries,
)

BOUNDS = (-74.1, 39.9, -73.9, 40.1)
TIMEOUT_BODY = "runtime error: Dispatcher_Client::request_read_and_idx::timeout. Please retry."
DUPLICATE_BODY = "runtime error: Dispatcher_Client::request_read_and_idx::duplicate_query"


def osm_square(way_id, lat, lon, size=0.001, tags=None):
    """Return node and way elements for a closed square way."""
    half = size / 2
    corners = [
        (lat - half, lon - half),
        (lat - half, lon + half),
        (lat + half, lon + half),
        (lat + half, lon - half),
    ]
    nodes = [
        {"type": "node", "id": way_id * 10 + i, "lat": c[0], "lon": c[1]}
        for i, c in enumerate(corners)
    ]
    way = {
        "type": "way",
        "id": way_id,
        "nodes": [n["id"] for n in nodes] + [nodes[0]["id"]],
    }
    if tags:
        way["tags"] = tags
    return [*nodes, way]


@pytest.fixture
def area(square):
    """Provide an area feature around (40, -74)."""
    return {
        "type": "Feature",
        "geometry": square(40.0, -74.0, 0.1),
        "properties": {"name": "Downtown", "parent": "Metro"},
    }


def overpass_client(handler, **kwargs) -> OverpassClient:
    return OverpassClient(
        "http://overpass/api/interpreter",
        timeout=30,
        retry_delay=0,
        max_fuzz_meters=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestErrorFromBody:
    """Test recognizing Overpass errors in response bodies."""

    def test_timeout(self):
        """Should report server timeouts."""
        assert isinstance(error_from_body(TIMEOUT_BODY), OverpassTimeoutError)

    def test_duplicate(self):
        """Should report duplicate queries."""
        assert isinstance(error_from_body(DUPLICATE_BODY), OverpassDuplicateQueryError)

    def test_unknown(self):
        """Should report other dispatcher errors with their text."""
        error = error_from_body("Dispatcher_Client::request_read_and_idx::rate_limited")

        assert type(error) is FeatureSourceError
        assert "rate_limited" in str(error)

    def test_no_error(self):
        """Should find nothing in an ordinary body."""
        assert error_from_body('{"elements": []}') is None


class TestOverpassClient:
    """Test querying Overpass."""

    def test_build_query(self):
        """Should put the timeout and a south,west,north,east bbox in the query."""
        query = overpass_client(lambda r: httpx.Response(200)).build_query(BOUNDS)

        assert "[timeout:30]" in query
        assert "[bbox:39.900000,-74.100000,40.100000,-73.900000];" in query
        assert 'way["leisure"~"garden|golf_course' in query

    def test_fuzz_bounds_grows(self):
        """Should only ever grow the bounds."""
        client = OverpassClient("http://overpass", max_fuzz_meters=5000)
        bounds = BOUNDS

        west, south, east, north = client.fuzz_bounds(bounds)

        assert west <= bounds[0] and south <= bounds[1]
        assert east >= bounds[2] and north >= bounds[3]

    @pytest.mark.asyncio
    async def test_posts_query(self):
        """Should post the query as form data and return the JSON."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"elements": []})

        data = await overpass_client(handler).get_possible_nest_locations(BOUNDS)

        assert data == {"elements": []}
        form = parse_qs(seen[0].content.decode())
        assert form["data"][0].startswith("[out:json]")

    @pytest.mark.asyncio
    async def test_retries_timeouts(self):
        """Should retry after a server timeout."""
        responses = [httpx.Response(504, text=TIMEOUT_BODY), httpx.Response(200, json={})]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        data = await overpass_client(handler).get_possible_nest_locations(BOUNDS)

        assert data == {}
        assert responses == []

    @pytest.mark.asyncio
    async def test_duplicate_retries_limited(self):
        """Should give up after repeated duplicate query errors."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(429, text=DUPLICATE_BODY)

        with pytest.raises(OverpassDuplicateQueryError):
            await overpass_client(handler).get_possible_nest_locations(BOUNDS)

        assert len(calls) == 6

    @pytest.mark.asyncio
    async def test_error_status(self):
        """Should fail on other error statuses."""
        client = overpass_client(lambda request: httpx.Response(400, text="bad query"))

        with pytest.raises(FeatureSourceError, match="status 400"):
            await client.get_possible_nest_locations(BOUNDS)


class TestOsmGeometries:
    """Test turning Overpass elements into polygons."""

    def test_closed_tagged_way(self):
        """Should turn a closed tagged way into a polygon."""
        elements = osm_square(1, 40.0, -74.0, tags={"leisure": "park", "name": "Central"})

        [(geometry, properties)] = list(osm_geometries({"elements": elements}))

        assert isinstance(geometry, Polygon)
        assert geometry.centroid.y == pytest.approx(40.0)
        assert properties["type"] == "way"
        assert properties["id"] == 1
        assert properties["tags"] == {"leisure": "park", "name": "Central"}

    def test_untagged_and_open_ways_ignored(self):
        """Should skip untagged ways and ways that do not close."""
        untagged = osm_square(1, 40.0, -74.0)
        open_way = osm_square(2, 41.0, -74.0, tags={"leisure": "park"})
        open_way[-1]["nodes"] = open_way[-1]["nodes"][:-1]

        assert list(osm_geometries({"elements": untagged + open_way})) == []

    def test_multipolygon_relation(self):
        """Should cut inner member ways out of outer ones."""
        elements = osm_square(5, 40.0, -74.0, size=0.01) + osm_square(6, 40.0, -74.0, size=0.002)
        elements.append(
            {
                "type": "relation",
                "id": 9,
                "members": [
                    {"type": "way", "ref": 5, "role": "outer"},
                    {"type": "way", "ref": 6, "role": "inner"},
                ],
                "tags": {"type": "multipolygon", "leisure": "park", "name": "Ring Park"},
            }
        )

        [(geometry, properties)] = list(osm_geometries({"elements": elements}))

        assert isinstance(geometry, Polygon)
        assert len(geometry.interiors) == 1
        assert properties["id"] == 9


class TestAdjustFeatureProperties:
    """Test flattening OSM tags."""

    def test_flattens_tags(self):
        """Should lift tags into the properties without overwriting them."""
        properties = {
            "type": "way",
            "id": "12",
            "tags": {"name": "Central", "leisure": "park", "type": "multipolygon"},
            "meta": {},
        }

        adjust_feature_properties(properties)

        assert properties == {"type": "way", "id": 12, "name": "Central", "leisure": "park"}


class TestOverpassSource:
    """Test importing possible nests for an area."""

    @pytest.mark.asyncio
    async def test_features(self, area):
        """Should keep features inside the area, naming and parenting them."""
        elements = (
            osm_square(1, 40.0, -74.0, tags={"leisure": "park", "name": "Central"})
            + osm_square(2, 40.01, -74.0, tags={"leisure": "pitch", "sport": "soccer"})
            + osm_square(3, 40.02, -74.0, tags={"natural": "scrub"})
            + osm_square(4, 45.0, -74.0, tags={"leisure": "park", "name": "Far Away"})
        )
        client = MagicMock()
        client.get_possible_nest_locations = AsyncMock(return_value={"elements": elements})

        features = await OverpassSource(client, area).get_features()

        assert [f["properties"]["id"] for f in features] == [1, 2, 3]
        assert [f["properties"].get("name") for f in features] == [
            "Central",
            "Unknown Soccer Field",
            None,
        ]
        assert {f["properties"]["parent"] for f in features} == {"Metro/Downtown"}
        assert features[0]["geometry"]["type"] == "Polygon"
        bounds = client.get_possible_nest_locations.await_args.args[0]
        assert bounds == pytest.approx((-74.05, 39.95, -73.95, 40.05))

    def test_unusable_area(self):
        """Should refuse an area without a polygon."""
        area = {"type": "Feature", "geometry": {"type": "Point", "coordinates": [0, 0]}}

        with pytest.raises(FeatureSourceError, match="not usable"):
            OverpassSource(MagicMock(), area)


class TestFindArea:
    """Test picking the area to search."""

    def test_found(self, area):
        """Should match on the area name."""
        assert find_area([area], "Downtown") is area

    def test_missing(self, area):
        """Should fail for unknown names."""
        with pytest.raises(FeatureSourceError, match="'Uptown' not found"):
            find_area([area], "Uptown")

"""Finds possible nest locations in OpenStreetMap through the Overpass API.

Parks, pitches, gardens, meadows and similar ways and relations inside an
area's bounding box are converted to polygon features. Features whose label
point lies outside the area itself are dropped.
"""

import asyncio
import logging
import random
from collections.abc import Iterator
from typing import Any

import httpx
import shapely
from shapely.geometry import LineString, MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import polygonize, unary_union

from nestwatch.config.models import OverpassConfig
from nestwatch.errors import FeatureSourceError, GeometryInvalidError
from nestwatch.geo.geometry import label_point, pad_bounds, parse_geometry, to_geojson
from nestwatch.importer.models import Feature

logger = logging.getLogger(__name__)

MAX_FUZZ_METERS = 5000
MAX_DUPLICATE_RETRIES = 5

NEST_QUERY = """[out:json]
[timeout:{timeout}]
[bbox:{bbox}];
(
    way["landuse"~"farmland|farmyard|grass|greenfield|meadow|orchard|recreation_ground|vineyard"];
    way["leisure"~"garden|golf_course|nature_reserve|park|pitch|playground|recreation_ground"];
    way["natural"~"grassland|heath|moor|plateau|scrub"];
    way["tourism"~"zoo"];

    rel["landuse"~"farmland|farmyard|grass|greenfield|meadow|orchard|recreation_ground|vineyard"];
    rel["leisure"~"garden|golf_course|nature_reserve|park|pitch|playground|recreation_ground"];
    rel["natural"~"grassland|heath|moor|plateau|scrub"];
    rel["tourism"~"zoo"];
);
out body;
>;
out skel qt;
"""

SPORT_NAMES = {
    "american_football": "American Football Field",
    "baseball": "Baseball Field",
    "basketball": "Basketball Court",
    "beachvolleyball": "Volleyball Court",
    "equestrian": "Equestrian Area",
    "football": "Football Field",
    "golf": "Golf Course",
    "horseshoes": "Horseshoes Area",
    "multi": "Multipurpose Area",
    "skateboard": "Skate Park",
    "soccer": "Soccer Field",
    "softball": "Softball Field",
    "tennis": "Tennis Court",
    "volleyball": "Volleyball Court",
}

LEISURE_NAMES = {
    "park": "Park",
    "garden": "Garden",
    "golf_course": "Golf Course",
    "nature_reserve": "Nature Reserve",
    "playground": "Playground",
}

_ERROR_MARKER = "Dispatcher_Client::request_read_and_idx::"


class OverpassTimeoutError(FeatureSourceError):
    """Raised when the Overpass server ran out of time for a query."""


class OverpassDuplicateQueryError(FeatureSourceError):
    """Raised when the Overpass server is already running the same query for us."""


def error_from_body(body: str) -> FeatureSourceError | None:
    """Return the error an Overpass response body reports, or None."""
    idx = body.find(_ERROR_MARKER)
    if idx < 0:
        return None
    rest = body[idx + len(_ERROR_MARKER) :]
    if rest.startswith("timeout"):
        return OverpassTimeoutError("overpass query timed out")
    if rest.startswith("duplicate_query"):
        return OverpassDuplicateQueryError("overpass rejected a duplicate query")
    return FeatureSourceError(f"overpass returned an unknown error: {rest}")


class OverpassClient:
    """Queries an Overpass API server for possible nest locations."""

    def __init__(
        self,
        url: str,
        timeout: float = 600.0,
        retry_delay: float = 1.0,
        max_fuzz_meters: float = MAX_FUZZ_METERS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self.retry_delay = retry_delay
        self.max_fuzz_meters = max_fuzz_meters
        self.transport = transport

    @classmethod
    def from_config(cls, config: OverpassConfig) -> "OverpassClient":
        return cls(config.url, config.timeout_seconds)

    def fuzz_bounds(
        self, bounds: tuple[float, float, float, float]
    ) -> tuple[float, float, float, float]:
        """Pad bounds by a random distance so a repeated query is not a duplicate."""
        return pad_bounds(bounds, random.uniform(0, self.max_fuzz_meters))

    def build_query(self, bounds: tuple[float, float, float, float]) -> str:
        west, south, east, north = bounds
        bbox = f"{south:f},{west:f},{north:f},{east:f}"
        return NEST_QUERY.format(timeout=int(self.timeout), bbox=bbox)

    async def _query(self, client: httpx.AsyncClient, query: str) -> dict[str, Any]:
        try:
            response = await client.post(self.url, data={"data": query})
        except httpx.HTTPError as e:
            raise FeatureSourceError(f"failed to query overpass: {e}") from e

        body = response.text
        if response.status_code != 200:
            error = error_from_body(body)
            if error is not None:
                raise error
            raise FeatureSourceError(
                f"overpass returned status {response.status_code}: body: {body}"
            )
        try:
            data = response.json()
        except ValueError as e:
            error = error_from_body(body)
            if error is not None:
                raise error from e
            raise FeatureSourceError(f"overpass returned malformed JSON: {e}") from e
        if not isinstance(data, dict):
            raise FeatureSourceError("overpass returned malformed JSON")
        return data

    async def get_possible_nest_locations(
        self, bounds: tuple[float, float, float, float]
    ) -> dict[str, Any]:
        """Return the raw Overpass JSON for nest-like places within ``bounds``.

        Server timeouts are retried after ``retry_delay`` seconds until the
        query succeeds. A duplicate query is retried with freshly fuzzed
        bounds, at most MAX_DUPLICATE_RETRIES times.

        Raises:
            FeatureSourceError: If the query fails for any other reason
        """
        bounds = self.fuzz_bounds(bounds)
        duplicate_retries = MAX_DUPLICATE_RETRIES

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            while True:
                try:
                    return await self._query(client, self.build_query(bounds))
                except OverpassTimeoutError:
                    logger.warning("Received timeout. sleeping %s second(s).", self.retry_delay)
                    await asyncio.sleep(self.retry_delay)
                except OverpassDuplicateQueryError:
                    if duplicate_retries <= 0:
                        raise
                    duplicate_retries -= 1
                    bounds = self.fuzz_bounds(bounds)


def _way_coords(way: dict[str, Any], nodes: dict[int, tuple[float, float]]) -> list | None:
    try:
        return [nodes[node_id] for node_id in way.get("nodes") or []]
    except KeyError:
        return None


def _relation_geometry(
    relation: dict[str, Any],
    ways: dict[int, dict[str, Any]],
    nodes: dict[int, tuple[float, float]],
) -> BaseGeometry | None:
    outer, inner = [], []
    for member in relation.get("members") or []:
        if member.get("type") != "way":
            continue
        way = ways.get(member.get("ref"))
        coords = _way_coords(way, nodes) if way is not None else None
        if not coords or len(coords) < 2:
            continue
        (inner if member.get("role") == "inner" else outer).append(LineString(coords))

    if not outer:
        return None
    geometry = unary_union(list(polygonize(outer)))
    if inner:
        geometry = geometry.difference(unary_union(list(polygonize(inner))))
    if geometry.is_empty or not isinstance(geometry, Polygon | MultiPolygon):
        return None
    return geometry


def osm_geometries(data: dict[str, Any]) -> Iterator[tuple[BaseGeometry, dict[str, Any]]]:
    """Yield (geometry, properties) for every tagged area in Overpass JSON.

    Closed ways become polygons. Multipolygon and boundary relations are
    assembled from their outer and inner member ways.
    """
    elements = [e for e in data.get("elements") or [] if isinstance(e, dict)]
    nodes = {
        e["id"]: (e["lon"], e["lat"])
        for e in elements
        if e.get("type") == "node" and "lat" in e and "lon" in e
    }
    ways = {e["id"]: e for e in elements if e.get("type") == "way"}

    for element in elements:
        tags = element.get("tags")
        if not tags:
            continue

        geometry: BaseGeometry | None = None
        if element.get("type") == "way":
            coords = _way_coords(element, nodes)
            if coords and len(coords) >= 4 and coords[0] == coords[-1]:
                geometry = Polygon(coords)
        elif element.get("type") == "relation" and tags.get("type") in ("multipolygon", "boundary"):
            geometry = _relation_geometry(element, ways, nodes)

        if geometry is None:
            continue
        yield geometry, {"type": element["type"], "id": element.get("id"), "tags": dict(tags)}


def adjust_feature_properties(properties: dict[str, Any]) -> None:
    """Flatten OSM tags into the properties and normalize ``name`` and ``id``."""
    tags = properties.pop("tags", None) or {}
    properties.pop("meta", None)
    properties.pop("relations", None)

    if not properties.get("name") and isinstance(tags.get("name"), str) and tags["name"]:
        properties["name"] = tags["name"]

    for key, value in tags.items():
        properties.setdefault(key, value)

    nest_id = properties.get("id")
    if isinstance(nest_id, str) and nest_id.isdigit():
        properties["id"] = int(nest_id, 10)


def unknown_name(properties: dict[str, Any]) -> str | None:
    """Return a placeholder name from the leisure or sport tag, if it maps to one."""
    leisure = properties.get("leisure")
    if leisure == "pitch":
        mapping = SPORT_NAMES.get(properties.get("sport"))
    else:
        mapping = LEISURE_NAMES.get(leisure)
    return f"Unknown {mapping}" if mapping else None


def area_full_name(area: Feature) -> str:
    properties = area.get("properties") or {}
    name = properties.get("name") if isinstance(properties.get("name"), str) else ""
    parent = properties.get("parent") if isinstance(properties.get("parent"), str) else ""
    if name and parent:
        return f"{parent}/{name}"
    return name


def find_area(areas: list[Feature], name: str) -> Feature:
    """Return the area feature named ``name``.

    Raises:
        FeatureSourceError: If no area has that name
    """
    for area in areas:
        if (area.get("properties") or {}).get("name") == name:
            return area
    raise FeatureSourceError(f"area '{name}' not found in loaded areas for overpass")


class OverpassSource:
    """Imports possible nests from OpenStreetMap within one area."""

    name = "overpass"

    def __init__(self, client: OverpassClient, area: Feature):
        self.client = client
        self.area_name = area_full_name(area)
        try:
            self.area_geometry = parse_geometry(area.get("geometry") or {})
        except GeometryInvalidError as e:
            raise FeatureSourceError(f"area '{self.area_name}' is not usable: {e}") from e
        shapely.prepare(self.area_geometry)

    async def get_features(self) -> list[Feature]:
        data = await self.client.get_possible_nest_locations(self.area_geometry.bounds)

        features = []
        for geometry, properties in osm_geometries(data):
            center = label_point(geometry)
            adjust_feature_properties(properties)

            nest_id = properties.get("id")
            if nest_id is None:
                logger.debug("Skipping osm feature with no id")
                continue

            was_unnamed = False
            name = properties.get("name")
            if not isinstance(name, str) or not name:
                name = unknown_name(properties)
                if name is not None:
                    properties["name"] = name
                    was_unnamed = True

            if not shapely.contains_xy(self.area_geometry, center.x, center.y):
                logger.debug(
                    "Skipping osm feature '%s': %0.5f,%0.5f not within area",
                    name,
                    center.y,
                    center.x,
                )
                continue

            if self.area_name:
                properties["parent"] = self.area_name
            else:
                properties.pop("parent", None)

            if was_unnamed:
                logger.info(
                    "osm feature id '%s' at %0.5f,%0.5f had no name: using '%s'",
                    nest_id,
                    center.y,
                    center.x,
                    name,
                )

            features.append(
                {"type": "Feature", "geometry": to_geojson(geometry), "properties": properties}
            )

        logger.info(
            "Found %d possible nest(s) in overpass for area '%s'", len(features), self.area_name
        )
        return features

"""Geometry helpers for nest geofences.

Nest geometries are GeoJSON Polygons or MultiPolygons in lon/lat order.
"""

import json
from typing import Any

from pyproj import Geod
from shapely.geometry import MultiPolygon, Point, Polygon, mapping, shape
from shapely.geometry.base import BaseGeometry
from shapely.geometry.polygon import orient
from shapely.ops import polylabel

from nestwatch.errors import GeometryInvalidError, UnsupportedGeometryError

SUPPORTED_GEOMETRY_TYPES = ("Polygon", "MultiPolygon")

_GEOD = Geod(ellps="WGS84")


def _check_rings_closed(geometry_type: str, coordinates: Any) -> None:
    polygons = [coordinates] if geometry_type == "Polygon" else coordinates
    for polygon in polygons:
        if not polygon:
            raise GeometryInvalidError(f"{geometry_type} has no rings")
        for ring in polygon:
            if len(ring) < 4:
                raise GeometryInvalidError(f"{geometry_type} ring has fewer than 4 positions")
            if list(ring[0]) != list(ring[-1]):
                raise GeometryInvalidError(f"{geometry_type} ring is not closed")


def parse_geometry(geojson: str | bytes | dict[str, Any]) -> Polygon | MultiPolygon:
    """Parse a GeoJSON geometry (or a Feature wrapping one).

    Raises:
        UnsupportedGeometryError: For anything but Polygon and MultiPolygon
        GeometryInvalidError: If the JSON is malformed or a ring is not closed
    """
    if isinstance(geojson, str | bytes):
        try:
            geojson = json.loads(geojson)
        except json.JSONDecodeError as e:
            raise GeometryInvalidError(f"geometry is not valid JSON: {e}") from e

    if not isinstance(geojson, dict):
        raise GeometryInvalidError("geometry must be a JSON object")

    if geojson.get("type") == "Feature":
        geojson = geojson.get("geometry") or {}

    geometry_type = geojson.get("type")
    if geometry_type not in SUPPORTED_GEOMETRY_TYPES:
        raise UnsupportedGeometryError(f"unsupported geometry type '{geometry_type}'")

    coordinates = geojson.get("coordinates")
    if not isinstance(coordinates, list):
        raise GeometryInvalidError(f"{geometry_type} has no coordinates")
    _check_rings_closed(geometry_type, coordinates)

    try:
        geometry = shape(geojson)
    except (ValueError, TypeError, IndexError) as e:
        raise GeometryInvalidError(f"could not build {geometry_type}: {e}") from e

    if geometry.is_empty:
        raise GeometryInvalidError(f"{geometry_type} is empty")
    return geometry


def area_m2(geometry: BaseGeometry) -> float:
    """Return the geodesic area of a lon/lat geometry in square meters.

    Holes are subtracted whichever way their rings are wound.
    """
    if isinstance(geometry, MultiPolygon):
        return sum(area_m2(polygon) for polygon in geometry.geoms)
    if isinstance(geometry, Polygon):
        geometry = orient(geometry, sign=1.0)
    area, _ = _GEOD.geometry_area_perimeter(geometry)
    return abs(area)


def label_point(geometry: Polygon | MultiPolygon) -> Point:
    """Return a point to label the geometry with.

    The centroid is used unless it falls outside the geometry (e.g. a crescent
    shaped park), in which case the pole of inaccessibility is used.
    """
    centroid = geometry.centroid
    if geometry.contains(centroid):
        return centroid
    if isinstance(geometry, MultiPolygon):
        largest = max(geometry.geoms, key=lambda polygon: polygon.area)
        return polylabel(largest, tolerance=0.000001)
    return polylabel(geometry, tolerance=0.000001)


def to_geojson(geometry: BaseGeometry) -> dict[str, Any]:
    """Serialize a geometry to a GeoJSON dictionary with list coordinates."""
    return json.loads(json.dumps(mapping(geometry)))


def to_geojson_text(geometry: BaseGeometry) -> str:
    return json.dumps(mapping(geometry), separators=(",", ":"))


def poly_path(geometry: Polygon | MultiPolygon) -> list[list[list[float]]]:
    """Return exterior rings as [[lat, lon], ...] paths, one per polygon."""
    polygons = geometry.geoms if isinstance(geometry, MultiPolygon) else [geometry]
    return [[[lat, lon] for lon, lat, *_ in polygon.exterior.coords] for polygon in polygons]


def pad_bounds(
    bounds: tuple[float, float, float, float], meters: float
) -> tuple[float, float, float, float]:
    """Grow (min_lon, min_lat, max_lon, max_lat) bounds by ``meters`` on every side."""
    min_lon, min_lat, max_lon, max_lat = bounds
    _, south, _ = _GEOD.fwd(min_lon, min_lat, 180, meters)
    west, _, _ = _GEOD.fwd(min_lon, min_lat, 270, meters)
    _, north, _ = _GEOD.fwd(max_lon, max_lat, 0, meters)
    east, _, _ = _GEOD.fwd(max_lon, max_lat, 90, meters)
    return west, south, east, north

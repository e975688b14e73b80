"""Spatial index over geofences."""

import threading
from dataclasses import dataclass
from typing import Generic, TypeVar

import shapely
from shapely.geometry import MultiPolygon, Polygon
from shapely.strtree import STRtree

from nestwatch.errors import UnsupportedGeometryError
from nestwatch.utils.rwlock import ReadWriteLock

T = TypeVar("T")


@dataclass(frozen=True)
class FenceEntry(Generic[T]):
    """A geofence and the value it maps to."""

    bounds: tuple[float, float, float, float]  # min lon, min lat, max lon, max lat
    geometry: Polygon | MultiPolygon
    value: T


class FenceIndex(Generic[T]):
    """Finds every geofence containing a point.

    Candidates come from a bounding box tree, then get an exact
    point-in-polygon test against prepared geometries. Searches may run
    concurrently; inserts are exclusive.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._build_lock = threading.Lock()
        self._entries: list[FenceEntry[T]] = []
        self._tree: STRtree | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def insert(self, geometry: Polygon | MultiPolygon, value: T) -> None:
        """Add a geofence.

        Raises:
            UnsupportedGeometryError: If geometry is not a Polygon or MultiPolygon
        """
        if not isinstance(geometry, Polygon | MultiPolygon):
            raise UnsupportedGeometryError(f"unsupported geometry type '{geometry.geom_type}'")

        shapely.prepare(geometry)
        entry = FenceEntry(bounds=tuple(geometry.bounds), geometry=geometry, value=value)
        with self._lock.write_locked():
            self._entries.append(entry)
            self._tree = None

    def search(self, lat: float, lon: float) -> list[T]:
        """Return the values of all geofences containing (lat, lon)."""
        with self._lock.read_locked():
            if not self._entries:
                return []
            tree = self._get_tree()
            matches = []
            for idx in tree.query(shapely.Point(lon, lat)):
                entry = self._entries[idx]
                if shapely.contains_xy(entry.geometry, lon, lat):
                    matches.append(entry.value)
            return matches

    def _get_tree(self) -> STRtree:
        # Entries cannot change while a read lock is held, so building here is safe.
        tree = self._tree
        if tree is None:
            with self._build_lock:
                tree = self._tree
                if tree is None:
                    tree = STRtree([entry.geometry for entry in self._entries])
                    self._tree = tree
        return tree

"""Where imported geofences come from.

Every source returns plain GeoJSON Feature dictionaries. Features carry
``name``, ``id`` and optionally ``parent`` (the area name) in their
properties.
"""

import json
import logging
from pathlib import Path
from typing import Any, Protocol

from nestwatch.errors import FeatureSourceError, GeometryInvalidError, StoreUnavailableError
from nestwatch.importer.koji import KojiClient
from nestwatch.importer.models import Feature

logger = logging.getLogger(__name__)


class FeatureSource(Protocol):
    name: str

    async def get_features(self) -> list[Feature]: ...


def _features_from_entries(path: Path, entries: list[Any]) -> list[Feature]:
    """Convert a ``[{"name": ..., "path": [[x, y], ...]}]`` list to features."""
    features = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("name"):
            raise FeatureSourceError(f"geofence in '{path}' is missing name")
        ring = [list(point) for point in entry.get("path") or []]
        if len(ring) < 2:
            raise FeatureSourceError(f"geofence in '{path}' has bad path")
        if ring[0] != ring[-1]:
            ring.append(ring[0])
        features.append(
            {
                "type": "Feature",
                "geometry": {"type": "Polygon", "coordinates": [ring]},
                "properties": {"name": entry["name"]},
            }
        )
    return features


def load_features_file(path: Path | str) -> list[Feature]:
    """Read a FeatureCollection, a single Feature or a name/path list from disk.

    Raises:
        FeatureSourceError: If the file cannot be read or has another format
    """
    path = Path(path)
    try:
        contents = json.loads(path.read_text())
    except OSError as e:
        raise FeatureSourceError(f"could not open '{path}': {e}") from e
    except json.JSONDecodeError as e:
        raise FeatureSourceError(f"couldn't decode '{path}': {e}") from e

    if isinstance(contents, list):
        return _features_from_entries(path, contents)
    if isinstance(contents, dict):
        if contents.get("type") == "FeatureCollection":
            return [f for f in contents.get("features") or [] if isinstance(f, dict)]
        if contents.get("type") == "Feature":
            return [contents]
    raise FeatureSourceError(f"couldn't decode '{path}': format unsupported")


class FileSource:
    name = "file"

    def __init__(self, path: Path | str):
        self.path = Path(path)

    async def get_features(self) -> list[Feature]:
        features = load_features_file(self.path)
        logger.info("Loaded %d feature(s) from %s", len(features), self.path)
        return features


class KojiSource:
    name = "koji"

    def __init__(self, client: KojiClient, project: str):
        self.client = client
        self.project = project

    async def get_features(self) -> list[Feature]:
        collection = await self.client.get_feature_collection(self.project)
        features = [f for f in collection.get("features") or [] if isinstance(f, dict)]
        logger.info("Loaded %d feature(s) from koji project '%s'", len(features), self.project)
        return features


class NestsDBSource:
    """Re-exports the nests already in the database."""

    name = "db"

    def __init__(self, nests_store: Any):
        self.nests_store = nests_store

    async def get_features(self) -> list[Feature]:
        features = []
        try:
            async for nest in self.nests_store.stream_nests():
                try:
                    features.append(nest.as_feature())
                except GeometryInvalidError as e:
                    logger.warning("DBSource: skipping nest '%s': %s", nest.name, e)
        except StoreUnavailableError as e:
            raise FeatureSourceError(f"failed to read nests: {e}") from e
        return features

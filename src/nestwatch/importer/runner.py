"""Filters geofences from a source and hands them to a destination."""

import logging
from typing import Protocol

from shapely.geometry import MultiPolygon, Polygon

from nestwatch.config.models import ImporterConfig
from nestwatch.errors import GeometryInvalidError
from nestwatch.geo.fence_index import FenceIndex
from nestwatch.geo.geometry import area_m2, label_point, parse_geometry
from nestwatch.importer.models import Feature, ImportCandidate, ImportResult, parse_nest_id
from nestwatch.importer.sources import FeatureSource

__all__ = ["ImportDestination", "ImportRunner", "parse_nest_id"]

logger = logging.getLogger(__name__)


class ImportDestination(Protocol):
    name: str

    async def save(self, candidates: list[ImportCandidate]) -> ImportResult: ...


class ImportRunner:
    """Reads features from a source, filters them and saves the survivors."""

    def __init__(
        self,
        config: ImporterConfig,
        source: FeatureSource,
        destination: ImportDestination,
    ):
        self.config = config
        self.source = source
        self.destination = destination

    def _default_name(self, geometry: Polygon | MultiPolygon) -> str:
        name = self.config.default_name
        if self.config.default_name_location:
            center = label_point(geometry)
            name += " at %0.5f,%0.5f" % (center.y, center.x)
        return name

    def candidate_from_feature(self, feature: Feature) -> ImportCandidate | None:
        """Validate one feature. Returns None (after logging why) if it is skipped."""
        properties = feature.get("properties") or {}
        raw_name = properties.get("name")
        label = raw_name if isinstance(raw_name, str) and raw_name else "<unknown>"

        try:
            geometry = parse_geometry(feature.get("geometry") or {})
        except GeometryInvalidError as e:
            logger.warning("Skipping feature '%s': %s", label, e)
            return None

        if isinstance(raw_name, str) and raw_name:
            name = raw_name
        elif self.config.default_name:
            name = self._default_name(geometry)
        else:
            logger.warning(
                "Skipping feature with no name and no default name configured"
            )
            return None

        parent = properties.get("parent")
        area_name = parent if isinstance(parent, str) and parent else None
        full_name = f"{area_name}/{name}" if area_name else name

        try:
            nest_id = parse_nest_id(properties.get("id"))
        except ValueError as e:
            logger.debug("Skipping feature '%s': %s", full_name, e)
            return None

        area = area_m2(geometry)
        if area < self.config.min_area_m2:
            logger.warning(
                "Skipping feature '%s': area too small (%0.3f < %0.3f)",
                full_name,
                area,
                self.config.min_area_m2,
            )
            return None
        if self.config.max_area_m2 > 0 and area > self.config.max_area_m2:
            logger.warning(
                "Skipping feature '%s': area too large (%0.3f > %0.3f)",
                full_name,
                area,
                self.config.max_area_m2,
            )
            return None

        return ImportCandidate(
            nest_id=nest_id,
            name=name,
            area_name=area_name,
            geometry=geometry,
            area_m2=area,
            properties={**properties, "name": name},
        )

    def select_candidates(self, features: list[Feature]) -> list[ImportCandidate]:
        """Validate features and drop those contained by an earlier one."""
        fences: FenceIndex[ImportCandidate] | None = (
            None if self.config.allow_contained else FenceIndex()
        )
        candidates = []
        for feature in features:
            candidate = self.candidate_from_feature(feature)
            if candidate is None:
                continue

            if fences is not None:
                center = label_point(candidate.geometry)
                containers = fences.search(center.y, center.x)
                if containers:
                    logger.warning(
                        "Skipping feature '%s': center at %0.5f,%0.5f appears "
                        "contained by feature '%s'",
                        candidate.full_name,
                        center.y,
                        center.x,
                        containers[0].full_name,
                    )
                    continue
                fences.insert(candidate.geometry, candidate)

            candidates.append(candidate)
        return candidates

    async def run(self) -> ImportResult:
        """Import everything from the source.

        Raises:
            FeatureSourceError: If the source cannot be read
            StoreUnavailableError: If the nests database cannot be read
            ImportDestinationError: If the destination cannot be prepared
        """
        features = await self.source.get_features()
        logger.info("Got %d feature(s) from %s", len(features), self.source.name)

        candidates = self.select_candidates(features)
        result = await self.destination.save(candidates)
        result.skipped += len(features) - len(candidates)

        logger.info(
            "Done. imported: %d, updated: %d, skipped: %d, failed: %d (%s -> %s)",
            result.imported,
            result.updated,
            result.skipped,
            result.failed,
            self.source.name,
            self.destination.name,
        )
        return result

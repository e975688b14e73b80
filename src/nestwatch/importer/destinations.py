"""Where imported geofences are written."""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from nestwatch.database.models import NestRow
from nestwatch.errors import ImportDestinationError, StoreUnavailableError
from nestwatch.geo.geometry import label_point, to_geojson, to_geojson_text
from nestwatch.importer.koji import KojiAdminClient, looks_like_number
from nestwatch.importer.models import ImportCandidate, ImportResult, parse_nest_id
from nestwatch.processor.models import to_epoch, utcnow

logger = logging.getLogger(__name__)


class ImportStore(Protocol):
    async def get_nests_without_polygon(self, nest_ids: Any) -> dict[int, NestRow]: ...

    async def insert_or_update(self, nest: NestRow) -> None: ...


class NestsDBDestination:
    """Saves candidates as nests, merging with nests already stored."""

    name = "db"

    def __init__(self, nests_store: ImportStore, clock: Callable[[], datetime] = utcnow):
        self.nests_store = nests_store
        self.clock = clock

    def merge_row(self, candidate: ImportCandidate, existing: NestRow | None) -> NestRow:
        """Build the row to save, keeping what the database already knows."""
        center = label_point(candidate.geometry)
        row = NestRow(
            nest_id=candidate.nest_id,
            lat=center.y,
            lon=center.x,
            name=candidate.name,
            polygon=to_geojson_text(candidate.geometry),
            area_name=candidate.area_name,
            m2=candidate.area_m2,
            active=True,
            updated=to_epoch(self.clock()),
        )
        if existing is None:
            return row

        # An empty area name never wipes out the stored one
        if not row.area_name:
            row.area_name = existing.area_name
        if existing.updated:
            row.updated = existing.updated
        row.active = existing.active
        row.discarded = None if existing.active else existing.discarded
        # Names may have been corrected by hand
        row.name = existing.name
        row.spawnpoints = existing.spawnpoints
        row.pokemon_id = existing.pokemon_id
        row.pokemon_form = existing.pokemon_form
        row.pokemon_avg = existing.pokemon_avg
        row.pokemon_ratio = existing.pokemon_ratio
        row.pokemon_count = existing.pokemon_count
        return row

    async def save(self, candidates: list[ImportCandidate]) -> ImportResult:
        """Insert or update a nest per candidate.

        Raises:
            StoreUnavailableError: If existing nests cannot be looked up
        """
        result = ImportResult()
        existing_rows = await self.nests_store.get_nests_without_polygon(
            [c.nest_id for c in candidates]
        )

        for candidate in candidates:
            existing = existing_rows.get(candidate.nest_id)
            row = self.merge_row(candidate, existing)
            try:
                await self.nests_store.insert_or_update(row)
            except StoreUnavailableError as e:
                logger.warning(
                    "Skipping feature '%s': failed to insert/update DB: %s",
                    candidate.full_name,
                    e,
                )
                result.failed += 1
                continue

            if existing is None:
                logger.info("Imported new nest '%s'", candidate.full_name)
                result.imported += 1
            else:
                logger.info("Updated existing nest '%s'", candidate.full_name)
                result.updated += 1
        return result


def nest_id_from_properties(properties: list[dict[str, Any]]) -> int | None:
    """Return the nest id stored in a koji geofence's ``id`` property, if any."""
    for prop in properties:
        if prop.get("name") == "id":
            try:
                return parse_nest_id(prop.get("value"))
            except ValueError:
                return None
    return None


class KojiDestination:
    """Creates a koji geofence per candidate and adds it to a project.

    Nests whose id already belongs to a geofence in the project are left
    alone. Koji names must be unique, so a taken name gets the label point
    appended.
    """

    name = "koji"

    def __init__(self, client: KojiAdminClient, project: str, create_properties: bool = False):
        self.client = client
        self.project = project
        self.create_properties = create_properties

    async def _geofence_properties(
        self, properties: dict[str, Any], full_name: str
    ) -> list[dict[str, Any]]:
        geofence_properties = []
        for key, value in properties.items():
            try:
                if self.create_properties and value is not None:
                    prop = await self.client.get_or_create_property(key, value)
                else:
                    prop = await self.client.get_property_by_name(key)
            except ImportDestinationError as e:
                logger.warning(
                    "Skipping property '%s' for feature '%s': %s", key, full_name, e
                )
                continue
            if prop is None:
                continue
            geofence_properties.append({"property_id": prop["id"], "name": key, "value": value})
        return geofence_properties

    async def _save_one(
        self,
        candidate: ImportCandidate,
        project_id: int,
        by_name: dict[str, dict[str, Any]],
        by_nest_id: dict[int, dict[str, Any]],
        result: ImportResult,
    ) -> None:
        name = candidate.name
        if looks_like_number(name):
            name = "Nest " + name

        existing = by_nest_id.get(candidate.nest_id)
        if existing is not None:
            logger.warning(
                "Skipping feature '%s': nest id %d exists in koji with name '%s'",
                name,
                candidate.nest_id,
                existing.get("name"),
            )
            result.skipped += 1
            return

        replacing: dict[str, Any] | None = None
        if name in by_name:
            center = label_point(candidate.geometry)
            alt_name = f"{name} at {center.y:0.5f},{center.x:0.5f}"
            replacing = by_name.get(alt_name)
            if replacing is None:
                logger.warning(
                    "Using name '%s' for feature '%s': original name exists", alt_name, name
                )
            else:
                logger.warning(
                    "Using name '%s' for feature '%s': both names exist (will update)",
                    alt_name,
                    name,
                )
            name = alt_name

        parent_id = None
        if candidate.area_name:
            parent = by_name.get(candidate.area_name)
            if parent is None:
                logger.warning(
                    "Parent '%s' of feature '%s' does not exist in koji. Importing anyway...",
                    candidate.area_name,
                    name,
                )
            else:
                parent_id = parent["id"]

        geometry = to_geojson(candidate.geometry)
        properties = await self._geofence_properties(
            {**candidate.properties, "name": name}, candidate.full_name
        )
        try:
            geofence = await self.client.create_geofence(
                {
                    "name": name,
                    "geo_type": geometry["type"],
                    "mode": "unset",
                    "parent": parent_id,
                    "geometry": geometry,
                    "projects": [project_id],
                    "properties": properties,
                }
            )
        except ImportDestinationError as e:
            logger.warning(
                "Skipping feature '%s': failed to create geofence: %s", candidate.full_name, e
            )
            result.failed += 1
            return

        by_name[geofence["name"]] = geofence
        by_nest_id[candidate.nest_id] = geofence
        if replacing is not None and geofence.get("id") == replacing.get("id"):
            logger.info(
                "Updated geofence %s(%s) for nest %d",
                geofence["name"],
                geofence["id"],
                candidate.nest_id,
            )
            result.updated += 1
        else:
            logger.info(
                "Created geofence %s(%s) for nest %d",
                geofence["name"],
                geofence.get("id"),
                candidate.nest_id,
            )
            result.imported += 1

    async def save(self, candidates: list[ImportCandidate]) -> ImportResult:
        """Create geofences for the candidates.

        Raises:
            ImportDestinationError: If the project or the existing geofences cannot be read
        """
        result = ImportResult()
        await self.client.refresh_properties()
        project = await self.client.get_project_by_name(self.project)
        project_geofences = set(project.get("geofences") or [])

        by_name: dict[str, dict[str, Any]] = {}
        by_nest_id: dict[int, dict[str, Any]] = {}
        for geofence in await self.client.get_all_geofences_full():
            by_name[geofence["name"]] = geofence
            if geofence["id"] in project_geofences:
                nest_id = nest_id_from_properties(geofence.get("properties") or [])
                if nest_id is not None:
                    by_nest_id[nest_id] = geofence

        for candidate in candidates:
            await self._save_one(candidate, project["id"], by_name, by_nest_id, result)
        return result

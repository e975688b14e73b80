"""Re-run the nest filters over the whole nests database.

Recomputes areas, refreshes spawnpoint counts and activates or
deactivates nests. Afterwards, nests mostly covered by a larger active
nest are disabled.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from shapely.geometry import MultiPolygon, Polygon
from shapely.strtree import STRtree

from nestwatch.config.models import FiltersConfig
from nestwatch.database.models import NESTING_POKEMON_FIELDS, NestRow, NestUpdate
from nestwatch.errors import GeometryInvalidError, StoreUnavailableError
from nestwatch.geo.geometry import area_m2, parse_geometry
from nestwatch.processor.models import DiscardReason, to_epoch, utcnow

logger = logging.getLogger(__name__)

# Stored areas within this many m² of the computed one are left alone
AREA_TOLERANCE_M2 = 100.0


class RefreshStore(Protocol):
    async def update_nest_partial(self, nest_id: int, nest_update: NestUpdate) -> None: ...

    async def get_active(self) -> list[NestRow]: ...

    async def iterate_concurrently(
        self, fn: Any, concurrency: int = ..., include_polygon: bool = ...
    ) -> None: ...


class PointCounter(Protocol):
    async def points_contained_count(self, geometry: Any, since_days: int = ...) -> int: ...


@dataclass(frozen=True)
class RefreshOptions:
    concurrency: int = 4
    force_spawnpoints_refresh: bool = False
    min_area_m2: float = 100.0
    max_area_m2: float = 10_000_000.0
    min_spawnpoints: int = 10
    max_overlap_pct: float = 60.0

    @classmethod
    def from_config(
        cls,
        config: FiltersConfig,
        force_spawnpoints_refresh: bool = False,
        concurrency: int | None = None,
    ) -> "RefreshOptions":
        return cls(
            concurrency=concurrency or config.concurrency,
            force_spawnpoints_refresh=force_spawnpoints_refresh,
            min_area_m2=config.min_area_m2,
            max_area_m2=config.max_area_m2,
            min_spawnpoints=config.min_points,
            max_overlap_pct=config.max_overlap_pct,
        )

    @property
    def overlap_pruning_enabled(self) -> bool:
        return 0 <= self.max_overlap_pct < 100


class NestRefresher:
    def __init__(
        self,
        nests_store: RefreshStore,
        points_store: PointCounter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.nests_store = nests_store
        self.points_store = points_store
        self.clock = clock

    async def refresh_nest(self, options: RefreshOptions, nest: NestRow) -> NestRow:
        """Re-filter one nest and write back whatever changed.

        Returns:
            The nest with changes applied.

        Raises:
            StoreUnavailableError: If the update cannot be written
        """
        name = nest.full_name

        m2 = nest.m2
        spawnpoints = nest.spawnpoints
        area_updated = False
        geometry: Polygon | MultiPolygon | None = None

        try:
            geometry = parse_geometry(nest.polygon or "")
        except GeometryInvalidError as e:
            logger.warning("Nest %s: found invalid geometry: %s", name, e)
            m2 = None
            spawnpoints = None
        else:
            area = area_m2(geometry)
            if m2 is None:
                logger.info("Nest %s: area was computed to be %0.3f m².", name, area)
                m2 = area
            elif abs(m2 - area) > AREA_TOLERANCE_M2:
                logger.info(
                    "Nest %s: area is %0.3f m², but DB says %0.3f m², will update.",
                    name,
                    area,
                    m2,
                )
                m2 = area
                area_updated = True

        # Skip oversized areas; they are discarded regardless of spawnpoints
        area_ok_for_query = m2 is not None and (
            options.max_area_m2 <= 0 or m2 <= options.max_area_m2
        )
        if (
            geometry is not None
            and area_ok_for_query
            and (spawnpoints is None or options.force_spawnpoints_refresh)
            and self.points_store is not None
        ):
            if spawnpoints is None:
                logger.info(
                    "Nest %s: number of spawnpoints is unknown. Will query golbat for them.",
                    name,
                )
            try:
                count = await self.points_store.points_contained_count(geometry)
            except StoreUnavailableError as e:
                if spawnpoints is None:
                    logger.warning(
                        "Nest %s: couldn't query spawnpoints (skipping filtering): %s",
                        name,
                        e,
                    )
                else:
                    logger.warning(
                        "Nest %s: couldn't query spawnpoints (using current value of %d): %s",
                        name,
                        spawnpoints,
                        e,
                    )
            else:
                if spawnpoints is None:
                    logger.info("Nest %s: spawnpoint count initial value is %d", name, count)
                else:
                    logger.info(
                        "Nest %s: spawnpoint count changed from %d to %d",
                        name,
                        spawnpoints,
                        count,
                    )
                spawnpoints = count

        active = False
        discarded: str | None = None
        if m2 is None:
            discarded = str(DiscardReason.INVALID)
            if discarded != nest.discarded:
                logger.warning("Nest %s: deactivating due to invalid geometry", name)
        elif m2 < options.min_area_m2:
            discarded = str(DiscardReason.AREA)
            if discarded != nest.discarded:
                logger.warning(
                    "Nest %s: deactivating due to min area filter (%0.3f < %0.3f)",
                    name,
                    m2,
                    options.min_area_m2,
                )
        elif options.max_area_m2 > 0 and m2 > options.max_area_m2:
            discarded = str(DiscardReason.AREA)
            if discarded != nest.discarded:
                logger.warning(
                    "Nest %s: deactivating due to max area filter (%0.3f > %0.3f)",
                    name,
                    m2,
                    options.max_area_m2,
                )
        elif spawnpoints is not None and spawnpoints < options.min_spawnpoints:
            discarded = str(DiscardReason.SPAWNPOINTS)
            if discarded != nest.discarded:
                logger.warning(
                    "Nest %s: deactivating due to spawnpoints filter (%d < %d)",
                    name,
                    spawnpoints,
                    options.min_spawnpoints,
                )
        else:
            active = True
            if not nest.active:
                logger.info(
                    "Nest %s: activating nest (might still be disabled by overlap filter later)",
                    name,
                )

        changes: dict[str, Any] = {}
        if discarded != nest.discarded:
            changes["discarded"] = discarded
        if m2 != nest.m2 or area_updated:
            changes["m2"] = m2
        if spawnpoints != nest.spawnpoints:
            changes["spawnpoints"] = spawnpoints
        if active != bool(nest.active):
            changes["active"] = active
        if not active and nest.pokemon_id is not None:
            changes.update({field: None for field in NESTING_POKEMON_FIELDS})

        if not changes:
            return nest

        changes["updated"] = to_epoch(self.clock())
        try:
            await self.nests_store.update_nest_partial(nest.nest_id, NestUpdate(**changes))
        except StoreUnavailableError as e:
            logger.error(
                "Nest %s: failed to update nest to active=%s, discarded=%s: %s",
                name,
                active,
                discarded,
                e,
            )
            raise

        refreshed = NestRow(**nest.model_dump())
        for field, value in changes.items():
            setattr(refreshed, field, value)
        return refreshed

    async def refresh_all(self, options: RefreshOptions) -> None:
        """Refresh every nest, then disable overlapping nests.

        Raises:
            StoreUnavailableError: If the nests cannot be read or updated
        """

        async def refresh(nest: NestRow) -> None:
            await self.refresh_nest(options, nest)

        await self.nests_store.iterate_concurrently(
            refresh, concurrency=options.concurrency, include_polygon=True
        )

        if not options.overlap_pruning_enabled:
            logger.info(
                "Skipping overlap disablement due to max_overlap_pct=%0.3f",
                options.max_overlap_pct,
            )
            return

        logger.info("Starting overlap disabling... this may take a while...")
        disabled = await self.disable_overlapping(options.max_overlap_pct)
        logger.info("Finished overlap disablement. Disabled %d nest(s)", disabled)

    async def disable_overlapping(self, max_overlap_pct: float) -> int:
        """Disable active nests overlapping a larger active nest by more than ``max_overlap_pct``.

        Nests are visited largest first. A nest that has been disabled does
        not disable anything else.

        Returns:
            The number of nests disabled.
        """
        candidates: list[tuple[NestRow, Polygon | MultiPolygon, float]] = []
        for nest in await self.nests_store.get_active():
            try:
                geometry = parse_geometry(nest.polygon or "")
            except GeometryInvalidError as e:
                logger.warning("Skipping nest %d for overlap check: %s", nest.nest_id, e)
                continue
            candidates.append((nest, geometry, nest.m2 or area_m2(geometry)))

        # Largest first; ties by id so runs are repeatable
        candidates.sort(key=lambda c: (-c[2], c[0].nest_id))
        tree = STRtree([geometry for _, geometry, _ in candidates])
        disabled: set[int] = set()

        for idx, (nest, geometry, _) in enumerate(candidates):
            if idx in disabled:
                continue
            for other_idx in tree.query(geometry, predicate="intersects"):
                other_idx = int(other_idx)
                # Only smaller (later) nests get disabled by this one
                if other_idx <= idx or other_idx in disabled:
                    continue
                other, other_geometry, other_area = candidates[other_idx]
                if other_area <= 0:
                    continue
                overlap_pct = 100 * area_m2(geometry.intersection(other_geometry)) / other_area
                if overlap_pct <= max_overlap_pct:
                    continue

                logger.warning(
                    "Disabling nest %d (%s): %0.3f%% overlapped by nest %d (%s)",
                    other.nest_id,
                    other.name,
                    overlap_pct,
                    nest.nest_id,
                    nest.name,
                )
                await self.nests_store.update_nest_partial(
                    other.nest_id,
                    NestUpdate.clear_nesting(
                        active=False,
                        discarded=str(DiscardReason.OVERLAP),
                        updated=to_epoch(self.clock()),
                    ),
                )
                disabled.add(other_idx)

        return len(disabled)

"""Owns the current nest processor and swaps in a new one on reload."""

import asyncio
import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Protocol

from nestwatch.config.models import NestwatchConfig, ProcessorConfig
from nestwatch.database.models import NestRow, NestUpdate
from nestwatch.errors import DuplicateNestError, StoreUnavailableError, UnsupportedGeometryError
from nestwatch.processor.filter import NestFilter
from nestwatch.processor.loader import DBNestLoader
from nestwatch.processor.matcher import NestMatcher
from nestwatch.processor.models import DiscardReason, Nest, Pokemon, to_epoch, utcnow
from nestwatch.processor.processor import NestProcessor, WebhookQueue
from nestwatch.processor.rolling import StatsSnapshot

logger = logging.getLogger(__name__)

LOG_INTERVAL_SECONDS = 60.0


class NestsStoreProtocol(Protocol):
    async def get_all(self) -> list[NestRow]: ...

    async def update_nest_partial(self, nest_id: int, nest_update: NestUpdate) -> None: ...


class PointCounter(Protocol):
    async def points_contained_count(self, geometry: Any, since_days: int = ...) -> int: ...


def _interval_seconds(processor: NestProcessor) -> float:
    return processor.config.rotation_interval.total_seconds()


class NestProcessorManager:
    """Holds the published processor.

    Reads take a short lock to grab the current processor. Loads are
    serialized by a separate asyncio lock so readers never wait on the
    database.
    """

    def __init__(
        self,
        nests_store: NestsStoreProtocol,
        webhook_sender: WebhookQueue,
        points_store: PointCounter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.nests_store = nests_store
        self.points_store = points_store
        self.webhook_sender = webhook_sender
        self.nest_loader = DBNestLoader(nests_store)
        self.clock = clock
        self.config: NestwatchConfig | None = None

        self._processor: NestProcessor | None = None
        self._publish_lock = threading.Lock()
        self._reload_lock = asyncio.Lock()
        self._reload_event = asyncio.Event()

        self._counter_lock = threading.Lock()
        self.pokemon_processed = 0
        self.nests_matched = 0
        self.pokemon_matched = 0

    def get_processor(self) -> NestProcessor | None:
        """Return the current processor. It may be replaced right after."""
        with self._publish_lock:
            return self._processor

    def _require_processor(self) -> NestProcessor:
        processor = self.get_processor()
        if processor is None:
            raise RuntimeError("no nest configuration has been loaded")
        return processor

    def get_config(self) -> ProcessorConfig:
        return self._require_processor().config

    def get_nests(self) -> list[Nest]:
        return self._require_processor().get_nests()

    def get_nest_by_id(self, nest_id: int) -> Nest | None:
        return self._require_processor().get_nest_by_id(nest_id)

    def process_pokemon(self, pokemon: Pokemon) -> None:
        """Count one spawn. Called from request worker threads."""
        matched = self._require_processor().add_pokemon(pokemon)
        with self._counter_lock:
            self.pokemon_processed += 1
            self.nests_matched += matched
            if matched > 0:
                self.pokemon_matched += 1

    def swap_counters(self) -> tuple[int, int]:
        """Return and reset the processed and matched counters."""
        with self._counter_lock:
            counts = (self.pokemon_processed, self.nests_matched)
            self.pokemon_processed = 0
            self.nests_matched = 0
            self.pokemon_matched = 0
        return counts

    # Stats operations

    def get_stats_snapshot(self) -> StatsSnapshot:
        return self._require_processor().get_stats_snapshot()

    def purge_all_stats(self) -> tuple[int, timedelta]:
        return self._require_processor().keep_recent_stats(timedelta(0))

    def keep_recent_stats(self, keep: timedelta) -> tuple[int, timedelta]:
        return self._require_processor().keep_recent_stats(keep)

    def purge_oldest_stats(self, duration: timedelta) -> tuple[int, timedelta]:
        return self._require_processor().purge_oldest_stats(duration)

    def purge_newest_stats(
        self, duration: timedelta, include_current: bool = False
    ) -> tuple[int, timedelta]:
        return self._require_processor().purge_newest_stats(duration, include_current)

    # Loading

    async def load_config(self, config: NestwatchConfig) -> None:
        """Load and filter nests, then publish a processor for them.

        Stats history and nesting state carry over from the previous
        processor. On failure the previous processor keeps running.

        Raises:
            StoreUnavailableError: If the nests cannot be loaded
        """
        async with self._reload_lock:
            nest_filter = NestFilter.from_config(config.filters)
            nests = await self.nest_loader.load_nests()
            logger.info("Got %d nest(s) from loader", len(nests))

            if self.points_store is None:
                logger.warning(
                    "No golbat DB configured. Missing spawnpoint counts in nests "
                    "will not be able to be retrieved and will not be filtered"
                )

            current = self.get_processor()
            matcher = NestMatcher()

            for nest in nests:
                if nest.id in matcher:
                    logger.warning(
                        "Loading nest %s: nest already exists (skipping this one).", nest.full_name
                    )
                    continue

                if not await self._filter_nest(nest, nest_filter, current):
                    continue

                try:
                    matcher.add_nest(nest)
                except (DuplicateNestError, UnsupportedGeometryError) as e:
                    logger.warning(
                        "Loading nest %s: failed to add nest to matcher: %s", nest.full_name, e
                    )
                    continue

                if nest.spawnpoints is None:
                    logger.info(
                        "Loading nest %s: active with an unknown number of spawnpoints",
                        nest.full_name,
                    )
                else:
                    logger.info(
                        "Loading nest %s: nest loaded and active with %d spawnpoint(s)",
                        nest.full_name,
                        nest.spawnpoints,
                    )

            processor = NestProcessor(
                self.nests_store,
                matcher,
                self.webhook_sender,
                config.processor,
                stats=current.stats if current is not None else None,
                clock=self.clock,
            )
            processor.log_configuration("Config loaded: ")

            with self._publish_lock:
                self._processor = processor
                self.config = config

            # Coalesces with any reload not yet seen by run()
            self._reload_event.set()

    async def _filter_nest(
        self, nest: Nest, nest_filter: NestFilter, current: NestProcessor | None
    ) -> bool:
        """Apply the area and spawnpoint limits, updating the database as needed.

        Returns:
            True if the nest should be active.
        """
        name = nest.full_name

        # Area gets rechecked; nests disabled for other reasons stay disabled
        if not nest.active and nest.discarded != DiscardReason.AREA:
            logger.warning("Loading nest %s: nest is disabled (skipping this one).", name)
            return False

        if reason := nest_filter.check_area(nest.area_m2):
            logger.warning("Loading nest %s: skipping nest due to filter: %s", name, reason)
            if not nest.active:
                return False
            nest.active = False
            nest.discarded = DiscardReason.AREA
            await self._update_nest(
                nest,
                {"active": False, "discarded": str(DiscardReason.AREA)},
                "disabling due to area filter.",
                clear_nesting=True,
            )
            return False

        _, db_updated_at = nest.get_nesting()
        needs_spawnpoints = nest.spawnpoints is None
        # A 0 that was never written by us is the column default, not a count
        if not needs_spawnpoints and nest.spawnpoints == 0 and db_updated_at is None:
            nest.spawnpoints = None
            needs_spawnpoints = True

        if needs_spawnpoints and self.points_store is not None:
            logger.info(
                "Loading nest %s: number of spawnpoints is unknown. Will query golbat for them.",
                name,
            )
            try:
                nest.spawnpoints = await self.points_store.points_contained_count(nest.geometry)
            except StoreUnavailableError as e:
                logger.warning("Loading nest %s: couldn't query spawnpoints: %s", name, e)

        if nest.spawnpoints is None:
            logger.warning(
                "Loading nest %s: allowing nest with unknown number of spawnpoints "
                "due to no golbat DB config or query error",
                name,
            )
        elif reason := nest_filter.check_spawnpoints(nest.spawnpoints):
            logger.warning("Loading nest %s: skipping nest: %s", name, reason)
            if not nest.active and not needs_spawnpoints:
                return False
            # Store the count so it is not queried again
            nest.active = False
            nest.discarded = DiscardReason.SPAWNPOINTS
            await self._update_nest(
                nest,
                {
                    "spawnpoints": nest.spawnpoints,
                    "active": False,
                    "discarded": str(DiscardReason.SPAWNPOINTS),
                },
                "updating spawnpoints, disabling due to spawnpoints filter.",
                clear_nesting=True,
            )
            return False

        if current is not None:
            old_nest = current.get_nest_by_id(nest.id)
            if old_nest is not None:
                nest.stats_info = old_nest.stats_info

        nest.discarded = None

        if not nest.active or (needs_spawnpoints and nest.spawnpoints is not None):
            nest.active = True
            values: dict[str, Any] = {"active": True, "discarded": None}
            if nest.spawnpoints is not None:
                values["spawnpoints"] = nest.spawnpoints
            await self._update_nest(
                nest, values, "updating spawnpoints (if they were fetched) and enabling"
            )
        return True

    async def _update_nest(
        self, nest: Nest, values: dict[str, Any], msg: str, clear_nesting: bool = False
    ) -> None:
        now = self.clock()
        nest.set_updated_at(now)
        values["updated"] = to_epoch(now)
        nest_update = NestUpdate.clear_nesting(**values) if clear_nesting else NestUpdate(**values)

        logger.info("Loading nest %s: updating nest in DB: %s", nest.full_name, msg)
        try:
            await self.nests_store.update_nest_partial(nest.id, nest_update)
        except StoreUnavailableError as e:
            logger.warning(
                "Loading nest %s: failed to update nest in DB: %s: %s", nest.full_name, msg, e
            )

    # Background loop

    async def _process_stats(self, processor: NestProcessor) -> None:
        logger.info("Rotating stats...")
        snapshot = await asyncio.to_thread(processor.rotate_stats)
        logger.info("Done rotating stats.")
        if snapshot is None:
            return
        try:
            await processor.process_stats(snapshot)
        except Exception:
            logger.exception("Failed to process stats")

    async def run(self) -> None:
        """Rotate and process stats on the configured interval until cancelled.

        A config must be loaded first.
        """
        processor = self.get_processor()
        if processor is None:
            raise RuntimeError("coding error: load_config() must be called before run()")

        loop = asyncio.get_running_loop()
        rotation_interval = _interval_seconds(processor)
        rotation_start = loop.time()
        next_log = rotation_start + LOG_INTERVAL_SECONDS

        # Eat any pending reload signal
        self._reload_event.clear()

        while True:
            deadline = min(rotation_start + rotation_interval, next_log)
            try:
                await asyncio.wait_for(
                    self._reload_event.wait(), timeout=max(0.0, deadline - loop.time())
                )
                reloaded = True
            except TimeoutError:
                reloaded = False

            now = loop.time()

            if reloaded:
                self._reload_event.clear()
                processor = self._require_processor()
                new_interval = _interval_seconds(processor)
                if new_interval != rotation_interval:
                    logger.info(
                        "Processing interval changed from %s to %s",
                        timedelta(seconds=rotation_interval),
                        timedelta(seconds=new_interval),
                    )
                    rotation_interval = new_interval
                    if now - rotation_start >= rotation_interval:
                        logger.info(
                            "Processing time hit during reload. Will process stats now."
                        )
                        await self._process_stats(processor)
                        rotation_start = loop.time()
                    logger.info(
                        "Next processing time set for %s from now",
                        timedelta(seconds=int(rotation_start + rotation_interval - loop.time())),
                    )
                continue

            if now >= next_log:
                pokemon_count, nests_count = self.swap_counters()
                logger.info(
                    "Last minute: processed %d pokemon, matched %d nest(s)",
                    pokemon_count,
                    nests_count,
                )
                next_log = now + LOG_INTERVAL_SECONDS

            if now >= rotation_start + rotation_interval:
                await self._process_stats(processor)
                # The next period starts once processing is done
                rotation_start = loop.time()

"""The nest processor: counts spawns per nest and decides nesting pokemon.

The manager builds a new processor for every config load and swaps it in.
The stats collection is handed from one processor to the next so history
survives reloads.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol

from nestwatch.config.models import ProcessorConfig
from nestwatch.database.models import NestUpdate
from nestwatch.errors import StoreUnavailableError
from nestwatch.processor.decision import decide_nesting, nest_to_global_ratio
from nestwatch.processor.matcher import NestMatcher
from nestwatch.processor.models import Nest, NestingPokemonInfo, Pokemon, utcnow
from nestwatch.processor.rolling import StatsCollection, StatsSnapshot
from nestwatch.processor.stats import TimePeriodCounts, truncate_to_minute

logger = logging.getLogger(__name__)


class NestUpdater(Protocol):
    async def update_nest_partial(self, nest_id: int, nest_update: NestUpdate) -> None: ...


class WebhookQueue(Protocol):
    def add_nest_webhook(self, nest: Nest, nesting: NestingPokemonInfo) -> None: ...


class NestProcessor:
    def __init__(
        self,
        nests_store: NestUpdater,
        matcher: NestMatcher,
        webhook_sender: WebhookQueue,
        config: ProcessorConfig,
        stats: StatsCollection | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.nests_store = nests_store
        self.matcher = matcher
        self.webhook_sender = webhook_sender
        self.config = config
        self.clock = clock
        # Reloads pass the previous processor's stats along
        self.stats = stats if stats is not None else StatsCollection(clock)

    def log_configuration(self, prefix: str) -> None:
        logger.info("%snests: %d, %s", prefix, len(self.matcher), self.config.describe())

    def add_pokemon(self, pokemon: Pokemon) -> int:
        """Count a spawn in every nest containing it.

        Returns:
            The number of nests matched.
        """
        nests = self.matcher.get_matching_nests(pokemon.lat, pokemon.lon)
        self.stats.add_pokemon(pokemon, nests)
        return len(nests)

    def get_nest_by_id(self, nest_id: int) -> Nest | None:
        return self.matcher.get_nest_by_id(nest_id)

    def get_nests(self) -> list[Nest]:
        return self.matcher.get_nests()

    def get_stats_snapshot(self) -> StatsSnapshot:
        return self.stats.snapshot()

    def rotate_stats(self) -> StatsSnapshot | None:
        return self.stats.rotate(
            self.config.max_history_duration, self.config.skip_period_min_global_pct
        )

    def keep_recent_stats(self, keep: timedelta) -> tuple[int, timedelta]:
        return self.stats.keep_recent(keep)

    def purge_oldest_stats(self, duration: timedelta) -> tuple[int, timedelta]:
        return self.stats.purge_oldest(duration)

    def purge_newest_stats(
        self, duration: timedelta, include_current: bool = False
    ) -> tuple[int, timedelta]:
        return self.stats.purge_newest(duration, include_current)

    async def rotate_and_process(self) -> None:
        snapshot = self.rotate_stats()
        if snapshot is not None:
            await self.process_stats(snapshot)

    def _log_latest_period(self, period: TimePeriodCounts) -> None:
        end_time = period.end_time or self.clock()
        duration = end_time - period.start_time
        logger.info(
            "Last stats period: dur: %s, nests_processed: %d, global_mons: %d",
            timedelta(seconds=int(duration.total_seconds())),
            len(period.nest_counts),
            period.global_counts.total,
        )
        for nest_id in list(period.nest_counts):
            nest = self.get_nest_by_id(nest_id)
            if nest is None:
                logger.warning("Last stats period: ignoring missing nest %d", nest_id)
                continue
            summary = period.summary_for(nest, duration)
            if summary is None:
                logger.warning("Last stats period: no summary for nest %s", nest)
                continue
            decide_nesting(summary, self.config, "Last stats period:")

    async def process_stats(self, snapshot: StatsSnapshot) -> None:
        """Decide nesting pokemon from a snapshot and persist the results."""
        self.log_configuration("Time period processing starting with configuration: ")

        totals = snapshot.totals
        # Skipped periods leave gaps, so this can be shorter than end - start
        duration = snapshot.duration
        full_duration = truncate_to_minute((totals.end_time or self.clock()) - totals.start_time)
        with_gaps = " with gaps" if full_duration > duration else ""

        logger.info(
            "Processing %d time period(s) (%s (%s to %s%s)): "
            "%d nests with pokemon, total mons globally: %d",
            len(snapshot),
            duration,
            totals.start_time.isoformat(),
            totals.end_time.isoformat() if totals.end_time else "now",
            with_gaps,
            len(totals.nest_counts),
            totals.global_counts.total,
        )

        if self.config.log_last_stats_period:
            self._log_latest_period(snapshot.latest)

        now = self.clock()
        log_prefix = f"All periods ({len(snapshot)}):"
        for nest_id in list(totals.nest_counts):
            nest = self.get_nest_by_id(nest_id)
            if nest is None:
                # Removed by a reload; its counts age out with the history
                logger.warning("Ignoring missing nest %d", nest_id)
                continue

            summary = totals.summary_for(nest, duration)
            if summary is None:
                logger.warning("No summary for nest %s", nest)
                continue

            nesting = decide_nesting(summary, self.config, log_prefix)

            if summary.duration < self.config.min_history_duration:
                continue

            await self._apply_nesting(nest, nesting, now)

        logger.info("Time period processing ending")

    async def _apply_nesting(
        self, nest: Nest, nesting: NestingPokemonInfo | None, now: datetime
    ) -> None:
        old, db_updated_at = nest.set_nesting(nesting, now)

        if nesting is None:
            if old is None:
                logger.info("Nest %s: still does not have a nesting pokemon", nest)
            else:
                logger.info("Nest %s ended: nesting pokemon was %s", nest, old.key)

            # Keep the last nesting pokemon stored until it has been gone a while
            if db_updated_at is not None and now - db_updated_at <= self.config.no_nesting_age:
                return

            logger.info("Nest %s: unsetting nesting pokemon in DB", nest)
            try:
                await self.nests_store.update_nest_partial(nest.id, nest.nesting_update(now))
            except StoreUnavailableError as e:
                logger.error(
                    "Nest %s: failed to update DB to unset nesting pokemon: %s", nest, e
                )
            nest.set_updated_at(now)
            return

        if old is None:
            logger.info("Nest %s started: nesting pokemon is %s", nest, nesting.key)
            self.webhook_sender.add_nest_webhook(nest, nesting)
        elif old.key != nesting.key:
            logger.info(
                "Nest %s changed: nesting pokemon went from %s to %s",
                nest,
                old.key,
                nesting.key,
            )
            self.webhook_sender.add_nest_webhook(nest, nesting)

        logger.info(
            "Nest %s nesting %s (for %s, stats duration %s, count %d/%d, "
            "nest hourly %0.3f, nest pct %0.3f, global hourly %0.3f, global pct %0.3f, "
            "nest/global pct ratio %0.3f)",
            nest,
            nesting.key,
            now - nesting.detected_at,
            timedelta(minutes=nesting.stats_duration_minutes),
            nesting.nest_count,
            nesting.nest_total,
            nesting.nest_hourly_count,
            nesting.nest_pct,
            nesting.global_hourly_count,
            nesting.global_pct,
            nest_to_global_ratio(nesting.nest_pct, nesting.global_pct),
        )

        try:
            await self.nests_store.update_nest_partial(nest.id, nest.nesting_update(now))
        except StoreUnavailableError as e:
            logger.error("Nest %s: failed to update DB to set nesting pokemon: %s", nest, e)
            return
        nest.set_updated_at(now)

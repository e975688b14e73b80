"""Rolling window of stats time periods plus a running total."""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from nestwatch.processor.models import Pokemon, utcnow
from nestwatch.processor.stats import TimePeriodCounts
from nestwatch.utils.rwlock import ReadWriteLock

if TYPE_CHECKING:
    from nestwatch.processor.models import Nest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatsSnapshot:
    """An immutable view of the collection at one point in time."""

    duration: timedelta  # covered by the periods, excluding gaps
    periods: list[TimePeriodCounts]
    totals: TimePeriodCounts

    @property
    def latest(self) -> TimePeriodCounts:
        return self.periods[-1]

    def __len__(self) -> int:
        return len(self.periods)


class StatsCollection:
    """Time periods, oldest first, and the sum of all of them.

    The last period is the one being written. Adding pokemon only takes the
    read side of the collection lock (the periods carry their own locks), so
    ingest threads never block each other; rotation and purges take the
    write side.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._lock = ReadWriteLock()
        now = clock()
        self._periods: list[TimePeriodCounts] = [TimePeriodCounts(now)]
        self._totals = TimePeriodCounts(now)
        self._duration = timedelta(0)

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._periods)

    @property
    def duration(self) -> timedelta:
        with self._lock.read_locked():
            return self._duration

    def add_pokemon(self, pokemon: Pokemon, nests: Iterable["Nest"]) -> None:
        nests = list(nests)
        with self._lock.read_locked():
            if not self._periods[-1].add_pokemon(pokemon, nests):
                logger.warning("Dropping pokemon %s: current time period is frozen", pokemon.key)
                return
            self._totals.add_pokemon(pokemon, nests)

    def rotate(self, max_history: timedelta, skip_pct: float = 0) -> StatsSnapshot | None:
        """Close the current period and start a new one.

        If a single pokemon is over ``skip_pct`` percent of the closed period
        (an event, most likely) the period is thrown away instead of kept.

        Returns:
            A snapshot of the history including the closed period, or None if
            the period was skipped.
        """
        with self._lock.write_locked():
            now = self._clock()
            last = self._periods[-1]
            last.freeze(now)

            key, pct = last.global_counts.most_spawning()
            if skip_pct > 0 and pct > skip_pct:
                logger.warning(
                    "Skipping stats period %s-%s: pokemon %s is %0.3f%% of all spawns "
                    "(limit %0.3f%%)",
                    last.start_time.isoformat(),
                    now.isoformat(),
                    key,
                    pct,
                    skip_pct,
                )
                self._totals.subtract(last)
                self._periods[-1] = TimePeriodCounts(now)
                self._totals.start_time = self._periods[0].start_time
                self._keep_recent(max_history)
                return None

            self._duration += last.duration()
            snapshot = StatsSnapshot(
                duration=self._duration,
                periods=list(self._periods),
                totals=self._totals.clone(now),
            )
            self._periods.append(TimePeriodCounts(now))
            self._keep_recent(max_history)
            return snapshot

    def snapshot(self) -> StatsSnapshot:
        """Take a snapshot including the period still being written."""
        with self._lock.read_locked():
            now = self._clock()
            periods = list(self._periods)
            current = periods[-1].clone(now)
            periods[-1] = current
            return StatsSnapshot(
                duration=self._duration + (now - current.start_time),
                periods=periods,
                totals=self._totals.clone(now),
            )

    def keep_recent(self, keep: timedelta) -> tuple[int, timedelta]:
        """Drop the oldest closed periods until at most ``keep`` remains.

        Returns:
            The number of periods dropped and the duration they covered.
        """
        with self._lock.write_locked():
            return self._keep_recent(keep)

    def _keep_recent(self, keep: timedelta) -> tuple[int, timedelta]:
        purged = 0
        purged_duration = timedelta(0)
        # A zero keep drops every closed period, even ones shorter than a minute
        while len(self._periods) > 1 and (keep <= timedelta(0) or self._duration > keep):
            oldest = self._periods.pop(0)
            duration = oldest.duration()
            self._totals.subtract(oldest)
            self._duration -= duration
            purged += 1
            purged_duration += duration

        if not self._periods:
            self._periods.append(TimePeriodCounts(self._clock()))
        self._totals.start_time = self._periods[0].start_time
        return purged, purged_duration

    def purge_all(self) -> tuple[int, timedelta]:
        return self.keep_recent(timedelta(0))

    def purge_oldest(self, duration: timedelta) -> tuple[int, timedelta]:
        """Drop whole closed periods, oldest first, covering at most ``duration``."""
        with self._lock.write_locked():
            purged = 0
            purged_duration = timedelta(0)
            while len(self._periods) > 1:
                period_duration = self._periods[0].duration()
                if purged_duration + period_duration > duration:
                    break
                oldest = self._periods.pop(0)
                self._totals.subtract(oldest)
                self._duration -= period_duration
                purged += 1
                purged_duration += period_duration

            self._totals.start_time = self._periods[0].start_time
            return purged, purged_duration

    def purge_newest(
        self, duration: timedelta, include_current: bool = False
    ) -> tuple[int, timedelta]:
        """Drop whole periods, newest first, covering at most ``duration``.

        The period being written is left alone unless ``include_current`` is
        set; if it goes, a fresh one is started.
        """
        with self._lock.write_locked():
            now = self._clock()
            current = None if include_current else self._periods.pop()

            purged = 0
            purged_duration = timedelta(0)
            while self._periods:
                newest = self._periods[-1]
                period_duration = newest.duration(now)
                if purged_duration + period_duration > duration:
                    break
                self._periods.pop()
                self._totals.subtract(newest)
                if newest.frozen:
                    self._duration -= period_duration
                purged += 1
                purged_duration += period_duration

            if current is not None:
                self._periods.append(current)
            elif not self._periods or self._periods[-1].frozen:
                self._periods.append(TimePeriodCounts(now))

            self._totals.start_time = self._periods[0].start_time
            return purged, purged_duration

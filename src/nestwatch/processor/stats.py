"""Pokemon counts for a single stats time period."""

import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from nestwatch.processor.models import Pokemon, PokemonKey, utcnow

if TYPE_CHECKING:
    from nestwatch.processor.models import Nest

logger = logging.getLogger(__name__)


def truncate_to_minute(duration: timedelta) -> timedelta:
    return timedelta(minutes=int(duration.total_seconds() // 60))


class PokemonCounts:
    """A total and per-pokemon counts. Locking is up to the owner."""

    def __init__(self, total: int = 0, by_pokemon: dict[PokemonKey, int] | None = None):
        self.total = total
        self.by_pokemon: dict[PokemonKey, int] = by_pokemon if by_pokemon is not None else {}

    def add(self, key: PokemonKey) -> None:
        self.total += 1
        self.by_pokemon[key] = self.by_pokemon.get(key, 0) + 1

    def subtract(self, other: "PokemonCounts") -> bool:
        """Subtract another set of counts, dropping pokemon that reach zero.

        Returns:
            True if nothing is left.
        """
        self.total -= other.total
        if self.total <= 0:
            if self.total < 0:
                logger.error(
                    "Total count has gone negative (%d) after subtracting %d",
                    self.total,
                    other.total,
                )
            self.total = 0
            self.by_pokemon = {}
            return True

        for key, count in other.by_pokemon.items():
            remaining = self.by_pokemon.get(key, 0) - count
            if remaining <= 0:
                if remaining < 0:
                    logger.error(
                        "Count for pokemon %s has gone negative (%d) after subtracting %d",
                        key,
                        remaining,
                        count,
                    )
                self.by_pokemon.pop(key, None)
            else:
                self.by_pokemon[key] = remaining
        return False

    def clone(self) -> "PokemonCounts":
        return PokemonCounts(self.total, dict(self.by_pokemon))

    def most_spawning(self) -> tuple[PokemonKey | None, float]:
        """Return the most seen pokemon and its percent of the total."""
        if self.total == 0 or not self.by_pokemon:
            return None, 0.0
        key, count = max(self.by_pokemon.items(), key=lambda item: (item[1], _reverse(item[0])))
        return key, 100 * count / self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_pokemon": {str(key): count for key, count in sorted(self.by_pokemon.items())},
        }


def _reverse(key: PokemonKey) -> tuple[int, int]:
    # max() tie-break so the lowest pokemon id wins
    return (-key.pokemon_id, -key.form_id)


@dataclass(frozen=True)
class GlobalPokemonCount:
    rank: int
    key: PokemonKey
    count: int
    total: int


@dataclass(frozen=True)
class NestPokemonCount:
    """How often a pokemon was seen in one nest and globally."""

    rank: int
    key: PokemonKey
    count: int  # this pokemon in the nest
    total: int  # all pokemon in the nest
    global_count: int  # this pokemon everywhere
    global_total: int  # all pokemon everywhere

    @property
    def nest_pct(self) -> float:
        if self.total == 0:
            return 0.0
        return 100 * self.count / self.total

    @property
    def global_pct(self) -> float:
        if self.global_total == 0:
            return 0.0
        return 100 * self.global_count / self.global_total


@dataclass(frozen=True)
class NestTimePeriodSummary:
    """Pokemon seen in a nest, most seen first."""

    nest: "Nest"
    counts: list[NestPokemonCount]
    start_time: datetime
    end_time: datetime | None
    duration: timedelta


class TimePeriodCounts:
    """Global and per-nest pokemon counts for one time period.

    Writes happen under this period's own lock until it is frozen. A frozen
    period never changes, so it is read without locking.
    """

    def __init__(self, start_time: datetime):
        self._lock = threading.Lock()
        self.frozen = False
        self.start_time = start_time
        self.end_time: datetime | None = None
        self.global_counts = PokemonCounts()
        self.nest_counts: dict[int, PokemonCounts] = {}

    def __repr__(self) -> str:
        return (
            f"TimePeriodCounts(start={self.start_time.isoformat()}, "
            f"end={self.end_time.isoformat() if self.end_time else None}, "
            f"total={self.global_counts.total}, nests={len(self.nest_counts)})"
        )

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with nullcontext() if self.frozen else self._lock:
            yield

    def add_pokemon(self, pokemon: Pokemon, nests: Iterable["Nest"]) -> bool:
        """Count a pokemon globally and in each matched nest.

        Returns:
            False if the period is already frozen and nothing was counted.
        """
        key = pokemon.key
        with self._lock:
            if self.frozen:
                return False
            self.global_counts.add(key)
            for nest in nests:
                counts = self.nest_counts.get(nest.id)
                if counts is None:
                    counts = self.nest_counts[nest.id] = PokemonCounts()
                counts.add(key)
        return True

    def subtract(self, other: "TimePeriodCounts") -> None:
        with self._locked():
            self.global_counts.subtract(other.global_counts)
            for nest_id, counts in other.nest_counts.items():
                nest_counts = self.nest_counts.get(nest_id)
                if nest_counts is None:
                    logger.error("Subtracting counts for nest %d which has none", nest_id)
                    continue
                if nest_counts.subtract(counts):
                    del self.nest_counts[nest_id]

    def freeze(self, end_time: datetime) -> None:
        with self._lock:
            self.end_time = end_time
            self.frozen = True

    def clone(self, end_time: datetime | None = None) -> "TimePeriodCounts":
        """Copy the counts into a new frozen period ending at ``end_time``."""
        with self._locked():
            cloned = TimePeriodCounts(self.start_time)
            cloned.global_counts = self.global_counts.clone()
            cloned.nest_counts = {
                nest_id: counts.clone() for nest_id, counts in self.nest_counts.items()
            }
        cloned.end_time = end_time if end_time is not None else self.end_time
        cloned.frozen = True
        return cloned

    def duration(self, now: datetime | None = None) -> timedelta:
        """Period length truncated to the minute; open periods run until ``now``."""
        end_time = self.end_time or now or utcnow()
        return truncate_to_minute(end_time - self.start_time)

    def ordered_global(self) -> list[GlobalPokemonCount]:
        """Global counts, most seen first, ties by pokemon id and form."""
        with self._locked():
            total = self.global_counts.total
            items = sorted(self.global_counts.by_pokemon.items(), key=lambda i: (-i[1], i[0]))
        return [
            GlobalPokemonCount(rank=rank, key=key, count=count, total=total)
            for rank, (key, count) in enumerate(items, start=1)
        ]

    def summary_for(self, nest: "Nest", duration: timedelta) -> NestTimePeriodSummary | None:
        """Summarize a nest's pokemon, most seen first.

        Ties go to the pokemon seen least globally. ``duration`` is passed
        through because totals can span gaps left by skipped periods.
        """
        with self._locked():
            nest_counts = self.nest_counts.get(nest.id)
            if nest_counts is None:
                return None
            global_by_pokemon = self.global_counts.by_pokemon
            global_total = self.global_counts.total
            entries = [
                (key, count, global_by_pokemon.get(key, 0))
                for key, count in nest_counts.by_pokemon.items()
            ]
            nest_total = nest_counts.total

        entries.sort(key=lambda e: (-e[1], e[2], e[0]))
        counts = [
            NestPokemonCount(
                rank=rank,
                key=key,
                count=count,
                total=nest_total,
                global_count=global_count,
                global_total=global_total,
            )
            for rank, (key, count, global_count) in enumerate(entries, start=1)
        ]
        return NestTimePeriodSummary(
            nest=nest,
            counts=counts,
            start_time=self.start_time,
            end_time=self.end_time,
            duration=duration,
        )

    def counts_for_nest(self, nest_id: int) -> PokemonCounts:
        with self._locked():
            counts = self.nest_counts.get(nest_id)
            return counts.clone() if counts is not None else PokemonCounts()

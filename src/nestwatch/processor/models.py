"""Domain models for the nest processor."""

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from shapely.geometry import MultiPolygon, Polygon

from nestwatch.database.models import NestRow, NestUpdate
from nestwatch.geo.geometry import area_m2, label_point, parse_geometry, to_geojson_text


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_epoch(dt: datetime) -> int:
    return int(dt.timestamp())


def from_epoch(epoch: int | None) -> datetime | None:
    if not epoch or epoch <= 0:
        return None
    return datetime.fromtimestamp(epoch, UTC)


class DiscardReason(StrEnum):
    """Why a nest is inactive."""

    AREA = "area"
    SPAWNPOINTS = "spawnpoints"
    OVERLAP = "overlap"
    INVALID = "invalid"
    UNVERIFIED = "unverified"


@dataclass(frozen=True, order=True)
class PokemonKey:
    """A pokemon and form, e.g. "7:0"."""

    pokemon_id: int
    form_id: int = 0

    def __str__(self) -> str:
        return f"{self.pokemon_id}:{self.form_id}"

    @classmethod
    def parse(cls, value: str) -> "PokemonKey":
        pokemon_id, _, form_id = value.partition(":")
        return cls(int(pokemon_id), int(form_id or 0))


@dataclass(frozen=True)
class Pokemon:
    """A single spawn observation."""

    pokemon_id: int
    form_id: int
    lat: float
    lon: float
    spawnpoint_id: int | None = None

    @property
    def key(self) -> PokemonKey:
        return PokemonKey(self.pokemon_id, self.form_id)


@dataclass
class NestingPokemonInfo:
    """Stats for a nest's nesting pokemon.

    'count' values are for the pokemon. 'total' values are for all pokemon
    seen, including this one.
    """

    key: PokemonKey
    stats_duration_minutes: int = 0

    nest_count: int = 0
    nest_total: int = 0
    nest_hourly_count: float = 0.0
    nest_hourly_total: float = 0.0

    global_count: int = 0
    global_total: int = 0
    global_hourly_count: float = 0.0
    global_hourly_total: float = 0.0

    detected_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def nest_pct(self) -> float:
        if self.nest_total == 0:
            return 0.0
        return 100 * self.nest_count / self.nest_total

    @property
    def nest_ratio(self) -> float:
        if self.nest_count == self.nest_total:
            return 0.0
        return self.nest_count / (self.nest_total - self.nest_count)

    @property
    def global_pct(self) -> float:
        if self.global_total == 0:
            return 0.0
        return 100 * self.global_count / self.global_total

    @property
    def global_ratio(self) -> float:
        if self.global_count == self.global_total:
            return 0.0
        return self.global_count / (self.global_total - self.global_count)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pokemon": {"pokemon_id": self.key.pokemon_id, "form_id": self.key.form_id},
            "stats_duration_minutes": self.stats_duration_minutes,
            "nest_count": self.nest_count,
            "nest_total": self.nest_total,
            "nest_hourly_count": self.nest_hourly_count,
            "nest_hourly_total": self.nest_hourly_total,
            "global_count": self.global_count,
            "global_total": self.global_total,
            "global_hourly_count": self.global_hourly_count,
            "global_hourly_total": self.global_hourly_total,
            "detected_at": self.detected_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class NestStatsInfo:
    """Nesting state for one nest, shared across reloads.

    ``updated_at`` mirrors the nest's ``updated`` column: it only advances
    when a nesting pokemon is written, so a lost nesting pokemon stays in the
    database until it has been gone for long enough.
    """

    def __init__(
        self,
        nesting: NestingPokemonInfo | None = None,
        updated_at: datetime | None = None,
    ):
        self._lock = threading.Lock()
        self._nesting = nesting
        self._updated_at = updated_at

    def get_nesting(self) -> tuple[NestingPokemonInfo | None, datetime | None]:
        with self._lock:
            return self._nesting, self._updated_at

    def set_updated_at(self, updated_at: datetime) -> datetime | None:
        with self._lock:
            old = self._updated_at
            self._updated_at = updated_at
            return old

    def set_nesting(
        self, nesting: NestingPokemonInfo | None, now: datetime
    ) -> tuple[NestingPokemonInfo | None, datetime | None]:
        """Replace the nesting pokemon.

        Keeps the first detection time when the pokemon did not change.

        Returns:
            The previous nesting pokemon and the (possibly new) updated time.
        """
        with self._lock:
            old = self._nesting
            if nesting is not None:
                self._updated_at = now
                if old is not None and old.key == nesting.key:
                    nesting.detected_at = old.detected_at
            self._nesting = nesting
            return old, self._updated_at


@dataclass(eq=False)
class Nest:
    """A nest geofence and its in-memory nesting state."""

    id: int
    name: str
    lat: float
    lon: float
    geometry: Polygon | MultiPolygon
    area_name: str | None = None
    spawnpoints: int | None = None
    area_m2: float = 0.0
    active: bool = True
    discarded: str | None = None
    stats_info: NestStatsInfo = field(default_factory=NestStatsInfo)

    @property
    def full_name(self) -> str:
        prefix = f"{self.area_name}/" if self.area_name else ""
        return f"{prefix}{self.name}(NestId:{self.id})"

    def __str__(self) -> str:
        return f"'{self.full_name}' centered at {self.lat:.5f},{self.lon:.5f}"

    def get_nesting(self) -> tuple[NestingPokemonInfo | None, datetime | None]:
        return self.stats_info.get_nesting()

    def set_nesting(
        self, nesting: NestingPokemonInfo | None, now: datetime
    ) -> tuple[NestingPokemonInfo | None, datetime | None]:
        return self.stats_info.set_nesting(nesting, now)

    def set_updated_at(self, updated_at: datetime) -> datetime | None:
        return self.stats_info.set_updated_at(updated_at)

    @classmethod
    def from_row(cls, row: NestRow) -> "Nest":
        """Build a nest from a database row.

        Raises:
            GeometryInvalidError: If the stored polygon cannot be used
        """
        geometry = parse_geometry(row.polygon or "")
        nesting, db_updated_at = nesting_info_from_row(row)
        return cls(
            id=row.nest_id,
            name=row.name,
            lat=row.lat,
            lon=row.lon,
            geometry=geometry,
            area_name=row.area_name,
            spawnpoints=row.spawnpoints,
            area_m2=row.m2 or area_m2(geometry),
            active=bool(row.active),
            discarded=row.discarded,
            stats_info=NestStatsInfo(nesting, db_updated_at),
        )

    @classmethod
    def from_geometry(
        cls,
        nest_id: int,
        name: str,
        geometry: Polygon | MultiPolygon,
        area_name: str | None = None,
    ) -> "Nest":
        center = label_point(geometry)
        return cls(
            id=nest_id,
            name=name,
            lat=center.y,
            lon=center.x,
            geometry=geometry,
            area_name=area_name,
            area_m2=area_m2(geometry),
            stats_info=NestStatsInfo(updated_at=utcnow()),
        )

    def as_row(self) -> NestRow:
        nesting, updated_at = self.get_nesting()
        row = NestRow(
            nest_id=self.id,
            lat=self.lat,
            lon=self.lon,
            name=self.name,
            polygon=to_geojson_text(self.geometry),
            area_name=self.area_name,
            spawnpoints=self.spawnpoints,
            m2=self.area_m2,
            active=self.active,
            discarded=None if self.active else self.discarded,
            updated=to_epoch(updated_at) if updated_at else None,
        )
        if nesting is not None:
            row.pokemon_id = nesting.key.pokemon_id
            row.pokemon_form = nesting.key.form_id
            row.pokemon_count = float(nesting.nest_count)
            row.pokemon_avg = nesting.nest_hourly_count
            row.pokemon_ratio = nesting.nest_pct
        return row

    def nesting_update(self, updated_at: datetime) -> NestUpdate:
        """Build the partial update that writes the current nesting pokemon (or clears it)."""
        nesting, _ = self.get_nesting()
        values: dict[str, Any] = {
            "updated": to_epoch(updated_at),
            "discarded": None if self.active else self.discarded,
        }
        if nesting is None:
            return NestUpdate.clear_nesting(**values)
        return NestUpdate(
            pokemon_id=nesting.key.pokemon_id,
            pokemon_form=nesting.key.form_id,
            pokemon_count=float(nesting.nest_count),
            pokemon_avg=nesting.nest_hourly_count,
            pokemon_ratio=nesting.nest_pct,
            **values,
        )


def nesting_info_from_row(row: NestRow) -> tuple[NestingPokemonInfo | None, datetime | None]:
    """Restore the nesting pokemon stored with a nest.

    Only the pokemon key matters on startup: it lets us log when the
    nesting pokemon changes. A missing ``updated`` counts as now.
    """
    db_updated_at = from_epoch(row.updated)
    if not row.pokemon_id or row.pokemon_id <= 0:
        return None, db_updated_at

    seen_at = db_updated_at or utcnow()
    count = row.pokemon_count or 0.0
    pct = row.pokemon_ratio or 0.0
    nesting = NestingPokemonInfo(
        key=PokemonKey(row.pokemon_id, row.pokemon_form or 0),
        nest_hourly_count=row.pokemon_avg or 0.0,
        nest_hourly_total=100 * count / pct if pct > 0 else 0.0,
        detected_at=seen_at,
        updated_at=seen_at,
    )
    return nesting, db_updated_at



"""Database models for the nests database and the golbat spawnpoint table."""

import json
from typing import Any

from pydantic import BaseModel
from sqlalchemy import BigInteger, Column, Float, Index, MetaData, String, Table, Text
from sqlmodel import Field, SQLModel

from nestwatch.errors import GeometryInvalidError

NESTING_POKEMON_FIELDS = (
    "pokemon_id",
    "pokemon_form",
    "pokemon_avg",
    "pokemon_ratio",
    "pokemon_count",
)


class NestRow(SQLModel, table=True):
    """A persisted nest geofence."""

    __tablename__: str = "nests"  # type: ignore[assignment]

    nest_id: int = Field(sa_column=Column(BigInteger, primary_key=True, autoincrement=False))
    lat: float
    lon: float
    name: str = Field(default="unknown", sa_column=Column(String(250), nullable=False))
    polygon: str | None = Field(default=None, sa_column=Column(Text))  # GeoJSON geometry
    area_name: str | None = Field(default=None, sa_column=Column(String(250)))
    spawnpoints: int | None = Field(default=None, sa_column=Column(BigInteger))
    m2: float | None = Field(default=None, sa_column=Column(Float))
    active: bool | None = False

    # Current nesting pokemon
    pokemon_id: int | None = None
    pokemon_form: int | None = None
    pokemon_avg: float | None = None  # nest hourly count
    pokemon_ratio: float | None = None  # percent of the nest's spawns
    pokemon_count: float | None = None

    discarded: str | None = Field(default=None, sa_column=Column(String(40)))
    updated: int | None = Field(default=None, sa_column=Column(BigInteger))  # epoch seconds

    __table_args__ = (
        Index("ix_nests_active", "active"),
        Index("ix_nests_area_name", "area_name"),
        Index("ix_nests_lat_lon", "lat", "lon"),
    )

    @property
    def full_name(self) -> str:
        prefix = f"{self.area_name}/" if self.area_name else ""
        return f"{prefix}{self.name}(NestId:{self.nest_id})"

    def as_feature(self) -> dict[str, Any]:
        """Return this nest as a GeoJSON Feature.

        Raises:
            GeometryInvalidError: If the nest has no polygon
        """
        if not self.polygon:
            raise GeometryInvalidError(f"nest {self.nest_id} has no polygon")
        try:
            geometry = json.loads(self.polygon)
        except json.JSONDecodeError as e:
            raise GeometryInvalidError(f"nest {self.nest_id} has a malformed polygon: {e}") from e
        properties: dict[str, Any] = {"name": self.name, "id": self.nest_id}
        if self.area_name:
            properties["parent"] = self.area_name
        return {"type": "Feature", "geometry": geometry, "properties": properties}


class NestUpdate(BaseModel):
    """Sparse update of a nest row.

    Only fields explicitly set are written; setting a field to None writes NULL.
    """

    area_name: str | None = None
    spawnpoints: int | None = None
    m2: float | None = None
    active: bool | None = None
    pokemon_id: int | None = None
    pokemon_form: int | None = None
    pokemon_avg: float | None = None
    pokemon_ratio: float | None = None
    pokemon_count: float | None = None
    discarded: str | None = None
    updated: int | None = None

    def values(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)

    @classmethod
    def clear_nesting(cls, **kwargs: Any) -> "NestUpdate":
        """Build an update that nulls the nesting pokemon fields."""
        return cls(**{field: None for field in NESTING_POKEMON_FIELDS}, **kwargs)


# Golbat's spawnpoint table lives in another database and is never migrated by us
golbat_metadata = MetaData()

spawnpoint_table = Table(
    "spawnpoint",
    golbat_metadata,
    Column("id", BigInteger, primary_key=True, autoincrement=False),
    Column("lat", Float, nullable=False),
    Column("lon", Float, nullable=False),
    Column("last_seen", BigInteger, nullable=False),
)

"""Nest API contract models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, SerializerFunctionWrapHandler, model_serializer

from nestwatch.geo.geometry import to_geojson
from nestwatch.processor.models import Nest

# Only written when they have a value
OMIT_WHEN_NONE = ("inactive_reason", "geometry")


class ErrorResponse(BaseModel):
    """Body of every API error."""

    error: str


class ApiNest(BaseModel):
    """A nest as returned by the API."""

    id: int
    name: str
    lat: float
    lon: float
    geometry: dict[str, Any] | None = Field(None, description="GeoJSON geometry")
    area_name: str | None = None
    spawnpoints: int | None = None
    area_m2: float = 0.0
    active: bool = False
    inactive_reason: str | None = None
    updated_at: datetime | None = None
    nesting_pokemon: dict[str, Any] | None = None

    @model_serializer(mode="wrap")
    def _omit_empty(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        data = handler(self)
        for key in OMIT_WHEN_NONE:
            if data.get(key) is None:
                data.pop(key, None)
        return data

    @classmethod
    def from_nest(cls, nest: Nest, include_geometry: bool = False) -> "ApiNest":
        nesting, updated_at = nest.get_nesting()
        return cls(
            id=nest.id,
            name=nest.name,
            lat=nest.lat,
            lon=nest.lon,
            geometry=to_geojson(nest.geometry) if include_geometry else None,
            area_name=nest.area_name,
            spawnpoints=nest.spawnpoints,
            area_m2=nest.area_m2,
            active=nest.active,
            inactive_reason=None if nest.active else (nest.discarded or ""),
            updated_at=updated_at,
            nesting_pokemon=nesting.to_dict() if nesting is not None else None,
        )


class NestsResponse(BaseModel):
    nests: list[ApiNest]


class NestResponse(BaseModel):
    nest: ApiNest

"""Types passed between import sources, the runner and destinations."""

from dataclasses import dataclass, field
from typing import Any

from shapely.geometry import MultiPolygon, Polygon

Feature = dict[str, Any]


@dataclass
class ImportCandidate:
    """A feature that passed validation and is ready to be saved."""

    nest_id: int
    name: str
    area_name: str | None
    geometry: Polygon | MultiPolygon
    area_m2: float
    properties: dict[str, Any] = field(default_factory=dict)

    @property
    def full_name(self) -> str:
        return f"{self.area_name}/{self.name}" if self.area_name else self.name


@dataclass
class ImportResult:
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0


def parse_nest_id(value: Any) -> int:
    """Return a nest id from a feature's ``id`` property.

    Raises:
        ValueError: If the id is missing or not an integer (or integer string)
    """
    if isinstance(value, bool):
        raise ValueError(f"id '{value}' type 'bool' not supported")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 10)
        except ValueError:
            raise ValueError(f"id '{value}' can't be parsed as int") from None
    if value is None:
        raise ValueError("has no id")
    raise ValueError(f"id '{value}' type '{type(value).__name__}' not supported")

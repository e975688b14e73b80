"""Area name parsing and wildcard matching."""

from collections.abc import Iterable
from dataclasses import dataclass

WILDCARD = "*"


@dataclass(frozen=True)
class AreaName:
    """A parent/name pair such as "London/Chelsea"."""

    parent: str
    name: str

    @classmethod
    def parse(cls, area: str) -> "AreaName":
        """Parse "parent/name"; a bare name matches under any parent."""
        parts = area.split("/")
        if len(parts) == 2:
            return cls(parent=parts[0], name=parts[1])
        return cls(parent=WILDCARD, name=area)

    def matches(self, area: "AreaName") -> bool:
        """Check whether ``area`` is selected by this (possibly wildcard) name."""
        if self.name == WILDCARD:
            return self.parent == area.parent
        if self.parent == WILDCARD:
            return self.name == area.name
        return self.parent == area.parent and self.name == area.name

    def __str__(self) -> str:
        return f"{self.parent}/{self.name}"


def parse_area_names(areas: Iterable[str]) -> list[AreaName]:
    return [AreaName.parse(area) for area in areas]


def area_matches_any(area: AreaName, candidates: Iterable[AreaName]) -> bool:
    return any(candidate.matches(area) for candidate in candidates)


def last_segment(area_name: str) -> str:
    """Return the name part of "parent/name" (or the whole string)."""
    return area_name.rsplit("/", 1)[-1]

"""Find the nests containing a spawn."""

from nestwatch.errors import DuplicateNestError
from nestwatch.geo.fence_index import FenceIndex
from nestwatch.processor.models import Nest


class NestMatcher:
    """Nests by id plus a spatial index over their geofences.

    Built during a reload and not modified once the processor using it is
    published.
    """

    def __init__(self) -> None:
        self._index: FenceIndex[Nest] = FenceIndex()
        self._nests: dict[int, Nest] = {}

    def __len__(self) -> int:
        return len(self._nests)

    def __contains__(self, nest_id: object) -> bool:
        return nest_id in self._nests

    def add_nest(self, nest: Nest) -> None:
        """Add a nest.

        Raises:
            DuplicateNestError: If a nest with the same id was already added
            UnsupportedGeometryError: If the nest geometry is not a (multi)polygon
        """
        if nest.id in self._nests:
            raise DuplicateNestError(nest.id)
        self._index.insert(nest.geometry, nest)
        self._nests[nest.id] = nest

    def get_matching_nests(self, lat: float, lon: float) -> list[Nest]:
        return self._index.search(lat, lon)

    def get_nest_by_id(self, nest_id: int) -> Nest | None:
        return self._nests.get(nest_id)

    def get_nests(self) -> list[Nest]:
        return list(self._nests.values())

"""Exception types shared across nestwatch."""


class NestwatchError(Exception):
    """Base class for nestwatch errors."""


class ConfigInvalidError(NestwatchError, ValueError):
    """Raised when a configuration file fails validation."""


class StoreUnavailableError(NestwatchError):
    """Raised when a database operation fails."""


class GeometryInvalidError(NestwatchError, ValueError):
    """Raised when a nest geometry cannot be parsed or is not usable."""


class UnsupportedGeometryError(GeometryInvalidError):
    """Raised for geometry types other than Polygon and MultiPolygon."""


class DuplicateNestError(NestwatchError):
    """Raised when a nest id is added to a matcher twice."""

    def __init__(self, nest_id: int):
        super().__init__(f"nest {nest_id} already exists")
        self.nest_id = nest_id


class NotFoundError(NestwatchError):
    """Raised when a requested record does not exist."""


class FeatureSourceError(NestwatchError):
    """Raised when geofences cannot be read from an import source."""


class ImportDestinationError(NestwatchError):
    """Raised when imported geofences cannot be written to their destination."""

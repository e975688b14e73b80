"""Configuration models for nestwatch.

This module contains all configuration-related Pydantic models used throughout the application.
"""

from datetime import timedelta
from urllib.parse import quote_plus, urlparse

from pydantic import BaseModel, Field, field_validator, model_validator


class LoggingConfig(BaseModel):
    """Structlog-based logging configuration."""

    level: str = "INFO"
    json_logs: bool | None = None  # None = auto-detect based on environment
    include_caller: bool = False  # Include file:line info (useful for debugging)
    extra_fields: dict[str, str] = Field(default_factory=lambda: {"service": "nestwatch"})


class HttpConfig(BaseModel):
    """Address the HTTP server listens on."""

    host: str = "127.0.0.1"
    port: int = 9042


class DatabaseConfig(BaseModel):
    """Connection settings for a MySQL/MariaDB compatible database.

    A full SQLAlchemy ``url`` wins over the individual fields when set.
    """

    url: str = ""
    host: str = "127.0.0.1"
    port: int = 3306
    user: str = ""
    password: str = ""
    db: str = "nests"
    max_pool_size: int = 10

    @field_validator("max_pool_size")
    @classmethod
    def validate_pool_size(cls, v: int) -> int:
        """Validate the connection pool size."""
        if v < 1:
            raise ValueError("max_pool_size must be at least 1")
        return v

    def sqlalchemy_url(self) -> str:
        """Return the async SQLAlchemy URL for this database."""
        if self.url:
            return self.url
        credentials = quote_plus(self.user)
        if self.password:
            credentials += ":" + quote_plus(self.password)
        return f"mysql+aiomysql://{credentials}@{self.host}:{self.port}/{self.db}"


class ProcessorConfig(BaseModel):
    """Settings for stats rotation and the nesting pokemon decision."""

    log_last_stats_period: bool = False
    rotation_interval_minutes: int = 15
    min_history_duration_hours: int = 1
    max_history_duration_hours: int = 12
    min_nest_observations: int = 4
    min_nest_pct: float = 12.0
    min_total_observations: int = 12
    max_global_pct: float = 15.0  # 0 disables
    min_nest_to_global_ratio: float = 8.0
    skip_period_min_global_pct: float = 40.0  # 0 disables
    no_nesting_age_hours: int = 12

    @field_validator("rotation_interval_minutes")
    @classmethod
    def validate_rotation_interval(cls, v: int) -> int:
        """Validate the rotation interval."""
        if v < 1:
            raise ValueError("rotation_interval_minutes must be at least 1")
        return v

    @field_validator("min_history_duration_hours")
    @classmethod
    def validate_min_history(cls, v: int) -> int:
        """Validate the minimum history duration."""
        if not 1 <= v <= 12:
            raise ValueError("min_history_duration_hours must be between 1 and 12")
        return v

    @field_validator("max_history_duration_hours")
    @classmethod
    def validate_max_history(cls, v: int) -> int:
        """Validate the maximum history duration."""
        if not 1 <= v <= 168:
            raise ValueError("max_history_duration_hours must be between 1 and 168")
        return v

    @field_validator("max_global_pct")
    @classmethod
    def validate_max_global_pct(cls, v: float) -> float:
        """Validate the global spawn percent ceiling."""
        if v != 0 and v < 1:
            raise ValueError("max_global_pct must be 0 (disabled) or at least 1")
        return v

    @field_validator("skip_period_min_global_pct")
    @classmethod
    def validate_skip_period_pct(cls, v: float) -> float:
        """Validate the period skip threshold."""
        if v != 0 and v < 3:
            raise ValueError("skip_period_min_global_pct must be 0 (disabled) or at least 3")
        return v

    @model_validator(mode="after")
    def validate_history_range(self) -> "ProcessorConfig":
        """Ensure max history is not smaller than min history."""
        if self.max_history_duration_hours < self.min_history_duration_hours:
            raise ValueError(
                "max_history_duration_hours must be >= min_history_duration_hours "
                f"({self.max_history_duration_hours} < {self.min_history_duration_hours})"
            )
        return self

    @property
    def rotation_interval(self) -> timedelta:
        return timedelta(minutes=self.rotation_interval_minutes)

    @property
    def min_history_duration(self) -> timedelta:
        return timedelta(hours=self.min_history_duration_hours)

    @property
    def max_history_duration(self) -> timedelta:
        return timedelta(hours=self.max_history_duration_hours)

    @property
    def no_nesting_age(self) -> timedelta:
        return timedelta(hours=self.no_nesting_age_hours)

    def describe(self) -> str:
        """Return a one-line description for logs."""
        return ", ".join(f"{name}: {value}" for name, value in self.model_dump().items())


class FiltersConfig(BaseModel):
    """Settings for the load-time nest filter and the refresher."""

    concurrency: int = 4
    min_points: int = 10
    min_area_m2: float = 100.0
    max_area_m2: float = 10_000_000.0  # 0 disables the upper bound
    max_overlap_pct: float = 60.0  # >= 100 disables overlap pruning

    @field_validator("concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        """Validate refresher concurrency."""
        if v < 1:
            raise ValueError("concurrency must be at least 1")
        return v

    @field_validator("min_points")
    @classmethod
    def validate_min_points(cls, v: int) -> int:
        """Validate the minimum spawnpoint count."""
        if v < 0:
            raise ValueError("min_points must be >= 0")
        return v

    @field_validator("max_overlap_pct")
    @classmethod
    def validate_max_overlap_pct(cls, v: float) -> float:
        """Validate the overlap percent."""
        if v < 0:
            raise ValueError("max_overlap_pct must be >= 0")
        return v

    @property
    def overlap_pruning_enabled(self) -> bool:
        return self.max_overlap_pct < 100


class WebhookSettings(BaseModel):
    """Settings shared by all webhook destinations."""

    flush_interval_seconds: int = 1

    @field_validator("flush_interval_seconds")
    @classmethod
    def validate_flush_interval(cls, v: int) -> int:
        """Validate the flush interval."""
        if v < 1:
            raise ValueError("flush_interval_seconds must be at least 1")
        return v


class WebhookConfig(BaseModel):
    """A single webhook destination."""

    url: str
    headers: list[str] = Field(default_factory=list)  # "Name: Value"
    areas: list[str] = Field(default_factory=list)  # "parent/name", "name", "*/name"

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate the webhook URL."""
        parsed = urlparse(v)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Invalid webhook URL: {v}")
        return v

    @field_validator("headers")
    @classmethod
    def validate_headers(cls, v: list[str]) -> list[str]:
        """Validate header strings are in 'Name: Value' form."""
        for header in v:
            name, sep, _ = header.partition(":")
            if not sep or not name.strip():
                raise ValueError(f"Invalid webhook header '{header}'. Expected 'Name: Value'.")
        return v

    def header_dict(self) -> dict[str, str]:
        """Return headers as a dictionary."""
        headers = {}
        for header in self.headers:
            name, _, value = header.partition(":")
            headers[name.strip()] = value.strip()
        return headers


class ImporterConfig(BaseModel):
    """Settings for the geofence importer."""

    default_name: str = "Unknown Nest"
    default_name_location: bool = True  # Append " at lat,lon" to default names
    min_area_m2: float = 100.0
    max_area_m2: float = 10_000_000.0  # 0 disables the upper bound
    allow_contained: bool = False


class KojiConfig(BaseModel):
    """Koji geofence server settings."""

    url: str
    token: str = ""
    project: str

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate and normalize the koji URL."""
        parsed = urlparse(v)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Invalid koji URL: {v}")
        # A pasted feature-collection URL still points at the right server
        v = v.split("/api/v1/geofence/feature-collection/", 1)[0]
        return v.rstrip("/")


class OverpassConfig(BaseModel):
    """OpenStreetMap Overpass API settings for finding parks."""

    url: str = "https://overpass-api.de/api/interpreter"
    timeout_seconds: float = 600.0

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate the Overpass URL."""
        parsed = urlparse(v)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Invalid overpass URL: {v}")
        return v


class NestwatchConfig(BaseModel):
    """Configuration settings for nestwatch."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)

    nests_db: DatabaseConfig = Field(default_factory=DatabaseConfig)
    golbat_db: DatabaseConfig | None = None  # Only needed to count spawnpoints

    processor: ProcessorConfig = Field(default_factory=ProcessorConfig)
    filters: FiltersConfig = Field(default_factory=FiltersConfig)

    webhook_settings: WebhookSettings = Field(default_factory=WebhookSettings)
    webhooks: list[WebhookConfig] = Field(default_factory=list)

    importer: ImporterConfig = Field(default_factory=ImporterConfig)
    koji: KojiConfig | None = None
    overpass: OverpassConfig = Field(default_factory=OverpassConfig)

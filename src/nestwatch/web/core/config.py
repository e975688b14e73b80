"""Configuration and store providers for the container."""

from nestwatch.config import ConfigManager, NestwatchConfig
from nestwatch.database.points_store import PointsStore


def get_config(config_manager: ConfigManager | None = None) -> NestwatchConfig:
    """Load nestwatch configuration.

    Args:
        config_manager: Optional ConfigManager to load from. If not provided,
                        one is created using NESTWATCH_CONFIG or the default path.

    Returns:
        NestwatchConfig: The loaded and validated configuration.
    """
    if config_manager is None:
        config_manager = ConfigManager()
    return config_manager.load()


def create_points_store(config: NestwatchConfig) -> PointsStore | None:
    """Return a store for golbat's spawnpoints, or None when none is configured."""
    if config.golbat_db is None:
        return None
    return PointsStore(config.golbat_db)

"""Configuration loading and validation."""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from nestwatch.config.models import NestwatchConfig
from nestwatch.errors import ConfigInvalidError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("configs/nestwatch.yaml")
CONFIG_PATH_ENV = "NESTWATCH_CONFIG"


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: Path | str | None = None):
        """Initialize ConfigManager.

        Args:
            config_path: Path to the YAML config file. Falls back to the
                NESTWATCH_CONFIG environment variable, then configs/nestwatch.yaml.
        """
        if config_path is None:
            config_path = os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH
        self.config_path = Path(config_path)

    def load(self) -> NestwatchConfig:
        """Load and validate configuration.

        Returns:
            NestwatchConfig: Loaded and validated configuration

        Raises:
            ConfigInvalidError: If the file is missing, unparsable or invalid
        """
        raw_config = self._read_yaml()
        return self._create_config_object(raw_config)

    def reload(self) -> NestwatchConfig:
        """Reload configuration from disk.

        Returns:
            NestwatchConfig: Freshly loaded configuration
        """
        return self.load()

    def _read_yaml(self) -> dict[str, Any]:
        """Read YAML config file.

        Returns:
            dict: Raw configuration dictionary
        """
        try:
            config_text = self.config_path.read_text()
        except OSError as e:
            raise ConfigInvalidError(f"Could not read config file {self.config_path}: {e}") from e

        try:
            raw_config = yaml.safe_load(config_text) or {}
        except yaml.YAMLError as e:
            raise ConfigInvalidError(f"Could not parse config file {self.config_path}: {e}") from e

        if not isinstance(raw_config, dict):
            raise ConfigInvalidError(f"Config file {self.config_path} must contain a mapping")
        return raw_config

    def _create_config_object(self, raw_config: dict[str, Any]) -> NestwatchConfig:
        """Create NestwatchConfig object from dictionary.

        Args:
            raw_config: Configuration dictionary

        Returns:
            NestwatchConfig: Typed configuration object
        """
        expected_fields = set(NestwatchConfig.model_fields.keys())
        filtered_config = {k: v for k, v in raw_config.items() if k in expected_fields}

        unexpected_fields = set(raw_config.keys()) - expected_fields
        if unexpected_fields:
            logger.warning("Ignoring unexpected config fields: %s", sorted(unexpected_fields))

        try:
            return NestwatchConfig(**filtered_config)
        except ValidationError as e:
            errors = [
                f"{'.'.join(str(loc) for loc in error['loc'])}: {error['msg']}"
                for error in e.errors()
            ]
            raise ConfigInvalidError(
                f"Configuration validation failed: {', '.join(errors)}"
            ) from e

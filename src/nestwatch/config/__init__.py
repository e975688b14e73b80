"""nestwatch configuration package.

This package provides YAML configuration loading and validation.
"""

from .manager import ConfigManager
from .models import NestwatchConfig

__all__ = [
    "ConfigManager",
    "NestwatchConfig",
]

"""Pokemon nest detection service.

Matches incoming spawn webhooks against nest geofences, keeps rolling spawn
statistics and decides which pokemon is nesting in each nest.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("nestwatch")
except PackageNotFoundError:
    __version__ = "unknown"

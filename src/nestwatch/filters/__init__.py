"""Nest filtering and refreshing against the spawnpoint database."""

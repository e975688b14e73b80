"""Geofence geometry helpers and spatial indexing."""

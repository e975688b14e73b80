"""Importing nest geofences from files, koji, OpenStreetMap or the database."""

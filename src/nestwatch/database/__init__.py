"""Nests database access and the golbat spawnpoint lookup.

Components should be imported directly from their modules:
# from nestwatch.database.nests_store import NestsStore
# from nestwatch.database.points_store import PointsStore
"""

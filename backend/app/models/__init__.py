"""
Importing any model module registers every table on db.metadata, so string
relationship targets ("Club", "Ride", ...) always resolve.
"""

from backend.app.models import club, club_membership, participation, ride  # noqa: F401

"""
services/membership_service.py — Read-only club and membership lookups.

Memberships are owned by the club subsystem. The ride engine only reads
them to resolve a caller's club role; it never creates or changes one.

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.errors import AppError, ErrorCode
from backend.app.models.club import Club
from backend.app.models.club_membership import ClubMembership


def get_membership(club_id: int, user_id: str, session: Session) -> ClubMembership | None:
    """Returns the user's membership in the club, or None. Status is not filtered."""
    return session.execute(
        select(ClubMembership).where(
            ClubMembership.club_id == club_id,
            ClubMembership.user_id == user_id,
        )
    ).scalar_one_or_none()


def get_club_or_404(club_id: int, session: Session) -> Club:
    """Returns the Club or raises CLUB_NOT_FOUND (404)."""
    club = session.get(Club, club_id)
    if club is None:
        raise AppError(
            ErrorCode.CLUB_NOT_FOUND,
            f"Club {club_id} does not exist.",
            404,
        )
    return club

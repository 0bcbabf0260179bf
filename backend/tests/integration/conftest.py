"""
tests/integration/conftest.py — Fixtures and helpers for all integration tests.

Design:
  - The app is created once per session using create_app("testing").
    TestingConfig points at TEST_DATABASE_URL when set, otherwise at an
    in-memory SQLite database (the models use non-native enums so the same
    tables work on both).
  - All tables are created once via db.create_all() at session start.
  - Between tests, all rows are deleted in FK-safe order so tests are isolated.
  - The capability cache is cleared between tests as well.

Identity comes from an external provider, so there is no register/login
endpoint. make_token() mints the same kind of HS256 bearer token the
provider would, signed with the testing JWT_SECRET_KEY.

Clubs and memberships are owned by the club subsystem and have no endpoints
here; make_club() / add_membership() insert rows directly.

Helper functions (not fixtures) are provided for common operations:
  - make_token(user_id, ...)     → signed JWT string
  - auth_headers(user_id, ...)   → {"Authorization": "Bearer <token>"}
  - make_club(app, ...)          → club id
  - add_membership(app, ...)     → membership id
  - make_ride(client, ...)       → ride data dict
  - publish(client, ...)         → ride data dict
  - join(client, ...)            → HTTP response
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from sqlalchemy import text

from backend.app import create_app
from backend.app.extensions import db as _db
from backend.app.models.club import Club
from backend.app.models.club_membership import ClubMembership, ClubRole, MembershipStatus
from backend.app.services.capability_resolver import capability_resolver


# ═══════════════════════════════════════════════════════════════════════════
# Session-scoped app fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def app():
    """
    Creates the Flask application in 'testing' mode once for the entire test session.
    """
    flask_app = create_app("testing")

    with flask_app.app_context():
        _db.create_all()

    yield flask_app

    with flask_app.app_context():
        _db.drop_all()


# ═══════════════════════════════════════════════════════════════════════════
# Function-scoped test isolation
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def clean_tables(app):
    """
    Deletes all rows between tests in FK-safe order.

    participations → rides → club_memberships → clubs
    """
    yield  # run the test

    capability_resolver.clear()

    with app.app_context():
        _db.session.rollback()  # discard any uncommitted state from a failed test
        _db.session.execute(text("DELETE FROM participations"))
        _db.session.execute(text("DELETE FROM rides"))
        _db.session.execute(text("DELETE FROM club_memberships"))
        _db.session.execute(text("DELETE FROM clubs"))
        _db.session.commit()


# ═══════════════════════════════════════════════════════════════════════════
# Client fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def client(app):
    """Flask test client. Each test gets a fresh client (function-scoped)."""
    return app.test_client()


# ═══════════════════════════════════════════════════════════════════════════
# Shared helper functions (not fixtures)
# ═══════════════════════════════════════════════════════════════════════════

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"


def make_token(
    user_id: str,
    system_role: str = "user",
    expires_in: timedelta = timedelta(minutes=15),
    secret: str = TEST_SECRET,
) -> str:
    """Mints an HS256 access token the way the identity provider would."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "email": f"{user_id}@test.com",
        "system_role": system_role,
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(user_id: str, system_role: str = "user") -> dict:
    """Returns the Authorization header dict for use in test requests."""
    return {"Authorization": f"Bearer {make_token(user_id, system_role)}"}


def make_club(app, name: str = "Test Club") -> int:
    with app.app_context():
        club = Club(name=name)
        _db.session.add(club)
        _db.session.commit()
        return club.id


def add_membership(
    app,
    club_id: int,
    user_id: str,
    role: ClubRole = ClubRole.MEMBER,
    status: MembershipStatus = MembershipStatus.ACTIVE,
) -> int:
    with app.app_context():
        membership = ClubMembership(club_id=club_id, user_id=user_id, role=role, status=status)
        _db.session.add(membership)
        _db.session.commit()
        return membership.id


def future(days: int = 7) -> str:
    """ISO-8601 start time `days` from now."""
    return (datetime.now(timezone.utc) + timedelta(days=days)).replace(microsecond=0).isoformat()


def make_ride(
    client,
    user_id: str,
    club_id: int,
    title: str = "Saturday Loop",
    max_participants: int | None = None,
    allow_waitlist: bool = True,
    publish_immediately: bool = False,
    start_in_days: int = 7,
    **extra,
) -> dict:
    """
    Creates a ride and returns the ride data dict.
    The caller becomes the ride's captain and first confirmed participant.
    """
    payload = {
        "title": title,
        "start_date_time": future(start_in_days),
        "estimated_duration": 120,
        "max_participants": max_participants,
        "allow_waitlist": allow_waitlist,
        "publish_immediately": publish_immediately,
    }
    payload.update(extra)
    resp = client.post(
        f"/api/v1/clubs/{club_id}/rides",
        json=payload,
        headers=auth_headers(user_id),
    )
    assert resp.status_code == 201, f"make_ride failed: {resp.get_json()}"
    return resp.get_json()["data"]


def publish(client, user_id: str, club_id: int, ride_id: int, **body) -> dict:
    resp = client.post(
        f"/api/v1/clubs/{club_id}/rides/{ride_id}/publish",
        json=body,
        headers=auth_headers(user_id),
    )
    assert resp.status_code == 200, f"publish failed: {resp.get_json()}"
    return resp.get_json()["data"]


def join(client, user_id: str, club_id: int, ride_id: int, message: str | None = None):
    """Joins a ride. Returns the HTTP response."""
    body = {} if message is None else {"message": message}
    return client.post(
        f"/api/v1/clubs/{club_id}/rides/{ride_id}/participants",
        json=body,
        headers=auth_headers(user_id),
    )


def leave(client, user_id: str, club_id: int, ride_id: int):
    return client.delete(
        f"/api/v1/clubs/{club_id}/rides/{ride_id}/participants/me",
        headers=auth_headers(user_id),
    )


def participants(client, user_id: str, club_id: int, ride_id: int) -> list[dict]:
    resp = client.get(
        f"/api/v1/clubs/{club_id}/rides/{ride_id}/participants",
        headers=auth_headers(user_id),
    )
    assert resp.status_code == 200, f"participants failed: {resp.get_json()}"
    return resp.get_json()["data"]


def get_ride(client, user_id: str, club_id: int, ride_id: int) -> dict:
    resp = client.get(
        f"/api/v1/clubs/{club_id}/rides/{ride_id}",
        headers=auth_headers(user_id),
    )
    assert resp.status_code == 200, f"get_ride failed: {resp.get_json()}"
    return resp.get_json()["data"]

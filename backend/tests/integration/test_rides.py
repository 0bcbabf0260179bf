"""
tests/integration/test_rides.py — Integration tests for ride lifecycle endpoints.

Endpoints covered:
  POST  /clubs/:club_id/rides                    → 201
  GET   /clubs/:club_id/rides                    → 200 (paged, visibility filtered)
  GET   /clubs/:club_id/rides/:ride_id           → 200
  PATCH /clubs/:club_id/rides/:ride_id           → 200
  POST  /clubs/:club_id/rides/:ride_id/publish   → 200
  POST  /clubs/:club_id/rides/:ride_id/cancel    → 200
  POST  /clubs/:club_id/rides/:ride_id/start     → 200
  POST  /clubs/:club_id/rides/:ride_id/complete  → 200
  GET   /clubs/:club_id/rides/:ride_id/summary   → 200

Roles used throughout:
  owner   — club owner (every ride capability)
  admin   — club admin (manage / cancel / assign leadership)
  captain — club captain (publish, view drafts, manage participants)
  member  — plain member (view, join, propose)
"""

from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.models.club_membership import ClubRole, MembershipStatus

from .conftest import (
    add_membership,
    auth_headers,
    future,
    get_ride,
    join,
    make_club,
    make_ride,
    participants,
    publish,
)


# ═══════════════════════════════════════════════════════════════════════════
# Setup helpers
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def club(app):
    """A club with one user per role. Returns the club id."""
    club_id = make_club(app)
    add_membership(app, club_id, "owner", ClubRole.OWNER)
    add_membership(app, club_id, "admin", ClubRole.ADMIN)
    add_membership(app, club_id, "captain", ClubRole.CAPTAIN)
    add_membership(app, club_id, "member", ClubRole.MEMBER)
    add_membership(app, club_id, "member2", ClubRole.MEMBER)
    return club_id


def _url(club_id: int, ride_id: int | None = None, action: str | None = None) -> str:
    url = f"/api/v1/clubs/{club_id}/rides"
    if ride_id is not None:
        url += f"/{ride_id}"
    if action is not None:
        url += f"/{action}"
    return url


def _post(client, user_id, club_id, ride_id, action, body=None):
    return client.post(
        _url(club_id, ride_id, action),
        json=body or {},
        headers=auth_headers(user_id),
    )


# ═══════════════════════════════════════════════════════════════════════════
# POST /clubs/:club_id/rides
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateRide:

    def test_member_creates_draft_proposal(self, client, club):
        ride = make_ride(client, "member", club, max_participants=10)

        assert ride["status"] == "draft"
        assert ride["audience"] == "invite_only"
        assert ride["scope"] == "club"
        assert ride["created_by"] == "member"
        assert ride["current_participants"] == 1
        assert ride["waitlist_count"] == 0
        assert ride["published_at"] is None

    def test_creator_becomes_confirmed_captain(self, client, club):
        ride = make_ride(client, "member", club)

        roster = participants(client, "member", club, ride["id"])
        assert len(roster) == 1
        assert roster[0]["user_id"] == "member"
        assert roster[0]["role"] == "captain"
        assert roster[0]["status"] == "confirmed"

    def test_defaults_applied(self, client, club):
        ride = make_ride(client, "member", club)
        assert ride["ride_type"] == "social"
        assert ride["difficulty"] == "intermediate"
        assert ride["allow_waitlist"] is True
        assert ride["is_public"] is False
        assert ride["max_participants"] is None

    def test_meeting_point_is_nested(self, client, club):
        ride = make_ride(
            client, "member", club,
            meeting_point_name="Cafe Velo",
            meeting_point_address="1 Main St",
        )
        assert ride["meeting_point"] == {"name": "Cafe Velo", "address": "1 Main St"}

    def test_captain_publish_immediately(self, client, club):
        ride = make_ride(client, "captain", club, publish_immediately=True)
        assert ride["status"] == "published"
        assert ride["audience"] == "members_only"
        assert ride["published_by"] == "captain"
        assert ride["published_at"] is not None

    def test_member_publish_immediately_returns_403(self, client, club):
        resp = client.post(
            _url(club),
            json={
                "title": "Fast Lap",
                "start_date_time": future(),
                "estimated_duration": 60,
                "publish_immediately": True,
            },
            headers=auth_headers("member"),
        )
        assert resp.status_code == 403
        error = resp.get_json()["error"]
        assert error["code"] == "INSUFFICIENT_PRIVILEGES"
        assert error["field"] == "publish_immediately"

    def test_non_member_returns_403(self, client, club):
        resp = client.post(
            _url(club),
            json={"title": "X", "start_date_time": future(), "estimated_duration": 60},
            headers=auth_headers("stranger"),
        )
        assert resp.status_code == 403

    def test_suspended_member_returns_403(self, client, app, club):
        add_membership(app, club, "suspended", ClubRole.OWNER, MembershipStatus.SUSPENDED)
        resp = client.post(
            _url(club),
            json={"title": "X", "start_date_time": future(), "estimated_duration": 60},
            headers=auth_headers("suspended"),
        )
        assert resp.status_code == 403

    def test_site_admin_creates_and_publishes_without_membership(self, client, club):
        resp = client.post(
            _url(club),
            json={
                "title": "Platform Ride",
                "start_date_time": future(),
                "estimated_duration": 90,
                "publish_immediately": True,
            },
            headers=auth_headers("root", system_role="site_admin"),
        )
        assert resp.status_code == 201
        assert resp.get_json()["data"]["status"] == "published"

    def test_unknown_club_returns_404(self, client):
        resp = client.post(
            _url(99999),
            json={"title": "X", "start_date_time": future(), "estimated_duration": 60},
            headers=auth_headers("member"),
        )
        assert resp.status_code == 404
        assert resp.get_json()["error"]["code"] == "CLUB_NOT_FOUND"

    def test_missing_title_returns_400_missing_field(self, client, club):
        resp = client.post(
            _url(club),
            json={"start_date_time": future(), "estimated_duration": 60},
            headers=auth_headers("member"),
        )
        assert resp.status_code == 400
        error = resp.get_json()["error"]
        assert error["code"] == "MISSING_FIELD"
        assert error["field"] == "title"

    def test_start_in_the_past_returns_400(self, client, club):
        past = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
        resp = client.post(
            _url(club),
            json={"title": "Late", "start_date_time": past, "estimated_duration": 60},
            headers=auth_headers("member"),
        )
        assert resp.status_code == 400
        assert resp.get_json()["error"]["field"] == "start_date_time"

    def test_zero_max_participants_returns_400(self, client, club):
        resp = client.post(
            _url(club),
            json={
                "title": "Tiny",
                "start_date_time": future(),
                "estimated_duration": 60,
                "max_participants": 0,
            },
            headers=auth_headers("member"),
        )
        assert resp.status_code == 400
        assert resp.get_json()["error"]["field"] == "max_participants"


# ═══════════════════════════════════════════════════════════════════════════
# GET /clubs/:club_id/rides/:ride_id
# ═══════════════════════════════════════════════════════════════════════════

class TestGetRide:

    def test_member_sees_published_ride_with_capabilities(self, client, club):
        ride = make_ride(client, "captain", club, publish_immediately=True)
        data = get_ride(client, "member", club, ride["id"])
        assert data["id"] == ride["id"]
        assert data["viewer_capabilities"] == [
            "create_ride_proposals",
            "join_rides",
            "view_club_rides",
        ]

    def test_draft_hidden_from_other_members(self, client, club):
        ride = make_ride(client, "member", club)
        resp = client.get(_url(club, ride["id"]), headers=auth_headers("member2"))
        assert resp.status_code == 403

    def test_draft_visible_to_creator_and_captain(self, client, club):
        ride = make_ride(client, "member", club)
        assert get_ride(client, "member", club, ride["id"])["status"] == "draft"
        assert get_ride(client, "captain", club, ride["id"])["status"] == "draft"

    def test_public_published_ride_visible_to_non_member(self, client, club):
        ride = make_ride(client, "captain", club, publish_immediately=True, is_public=True)
        data = get_ride(client, "stranger", club, ride["id"])
        assert data["is_public"] is True
        assert data["viewer_capabilities"] == []

    def test_ride_from_another_club_returns_404(self, client, app, club):
        other_club = make_club(app, "Other Club")
        ride = make_ride(client, "captain", club, publish_immediately=True)
        resp = client.get(_url(other_club, ride["id"]), headers=auth_headers("captain"))
        assert resp.status_code == 404
        assert resp.get_json()["error"]["code"] == "RIDE_NOT_FOUND"

    def test_unknown_ride_returns_404(self, client, club):
        resp = client.get(_url(club, 99999), headers=auth_headers("member"))
        assert resp.status_code == 404


# ═══════════════════════════════════════════════════════════════════════════
# PATCH /clubs/:club_id/rides/:ride_id
# ═══════════════════════════════════════════════════════════════════════════

class TestUpdateRide:

    def test_creator_updates_own_proposal(self, client, club):
        ride = make_ride(client, "member", club)
        resp = client.patch(
            _url(club, ride["id"]),
            json={"title": "Renamed", "difficulty": "advanced"},
            headers=auth_headers("member"),
        )
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["title"] == "Renamed"
        assert data["difficulty"] == "advanced"

    def test_other_member_returns_403(self, client, club):
        ride = make_ride(client, "member", club)
        resp = client.patch(
            _url(club, ride["id"]),
            json={"title": "Hijack"},
            headers=auth_headers("member2"),
        )
        assert resp.status_code == 403

    def test_admin_updates_any_ride(self, client, club):
        ride = make_ride(client, "captain", club, publish_immediately=True)
        resp = client.patch(
            _url(club, ride["id"]),
            json={"max_participants": 12},
            headers=auth_headers("admin"),
        )
        assert resp.status_code == 200
        assert resp.get_json()["data"]["max_participants"] == 12

    def test_max_below_confirmed_count_returns_400(self, client, club):
        ride = make_ride(client, "captain", club, publish_immediately=True, max_participants=5)
        assert join(client, "member", club, ride["id"]).status_code == 201

        resp = client.patch(
            _url(club, ride["id"]),
            json={"max_participants": 1},
            headers=auth_headers("captain"),
        )
        assert resp.status_code == 400
        error = resp.get_json()["error"]
        assert error["code"] == "INVALID_FIELD"
        assert error["field"] == "max_participants"

    def test_empty_body_returns_400(self, client, club):
        ride = make_ride(client, "member", club)
        resp = client.patch(_url(club, ride["id"]), json={}, headers=auth_headers("member"))
        assert resp.status_code == 400

    def test_update_cancelled_ride_returns_422(self, client, club):
        ride = make_ride(client, "member", club)
        assert _post(client, "member", club, ride["id"], "cancel").status_code == 200

        resp = client.patch(
            _url(club, ride["id"]),
            json={"title": "Too late"},
            headers=auth_headers("member"),
        )
        assert resp.status_code == 422
        assert resp.get_json()["error"]["code"] == "INVALID_RIDE_STATUS"


# ═══════════════════════════════════════════════════════════════════════════
# Lifecycle: publish / cancel / start / complete
# ═══════════════════════════════════════════════════════════════════════════

class TestLifecycle:

    def test_captain_publishes_member_proposal(self, client, club):
        ride = make_ride(client, "member", club)
        data = publish(client, "captain", club, ride["id"])
        assert data["status"] == "published"
        assert data["audience"] == "members_only"
        assert data["published_by"] == "captain"

    def test_publish_with_audience_and_public_flag(self, client, club):
        ride = make_ride(client, "member", club)
        data = publish(client, "captain", club, ride["id"], audience="public_read_only", is_public=True)
        assert data["audience"] == "public_read_only"
        assert data["is_public"] is True

    def test_member_cannot_publish_own_proposal(self, client, club):
        ride = make_ride(client, "member", club)
        resp = _post(client, "member", club, ride["id"], "publish")
        assert resp.status_code == 403

    def test_publish_twice_returns_422(self, client, club):
        ride = make_ride(client, "captain", club, publish_immediately=True)
        resp = _post(client, "captain", club, ride["id"], "publish")
        assert resp.status_code == 422
        assert resp.get_json()["error"]["code"] == "INVALID_RIDE_STATUS"

    def test_creator_cancels_own_ride_with_reason(self, client, club):
        ride = make_ride(client, "member", club)
        resp = _post(client, "member", club, ride["id"], "cancel", {"reason": "Rain"})
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["status"] == "cancelled"
        assert data["cancellation_reason"] == "Rain"
        assert data["cancelled_at"] is not None

    def test_captain_cannot_cancel_others_ride(self, client, club):
        ride = make_ride(client, "member", club)
        resp = _post(client, "captain", club, ride["id"], "cancel")
        assert resp.status_code == 403

    def test_cancel_twice_returns_422(self, client, club):
        ride = make_ride(client, "member", club)
        _post(client, "member", club, ride["id"], "cancel")
        resp = _post(client, "member", club, ride["id"], "cancel")
        assert resp.status_code == 422

    def test_start_draft_returns_422(self, client, club):
        ride = make_ride(client, "admin", club)
        resp = _post(client, "admin", club, ride["id"], "start")
        assert resp.status_code == 422

    def test_full_lifecycle(self, client, club):
        ride = make_ride(client, "captain", club, publish_immediately=True)

        started = _post(client, "admin", club, ride["id"], "start")
        assert started.status_code == 200
        assert started.get_json()["data"]["status"] == "active"
        assert started.get_json()["data"]["started_at"] is not None

        completed = _post(client, "admin", club, ride["id"], "complete", {"notes": "Great ride"})
        assert completed.status_code == 200
        data = completed.get_json()["data"]
        assert data["status"] == "completed"
        assert data["completion_notes"] == "Great ride"

        # Completed is terminal.
        assert _post(client, "admin", club, ride["id"], "cancel").status_code == 422

    def test_complete_published_ride_returns_422(self, client, club):
        ride = make_ride(client, "captain", club, publish_immediately=True)
        resp = _post(client, "admin", club, ride["id"], "complete")
        assert resp.status_code == 422

    def test_member_cannot_start(self, client, club):
        ride = make_ride(client, "captain", club, publish_immediately=True)
        resp = _post(client, "member", club, ride["id"], "start")
        assert resp.status_code == 403


# ═══════════════════════════════════════════════════════════════════════════
# GET /clubs/:club_id/rides/:ride_id/summary
# ═══════════════════════════════════════════════════════════════════════════

class TestRideSummary:

    def test_summary_is_null_before_completion(self, client, club):
        ride = make_ride(client, "captain", club, publish_immediately=True)
        resp = client.get(_url(club, ride["id"], "summary"), headers=auth_headers("member"))
        assert resp.status_code == 200
        assert resp.get_json()["data"] is None

    def test_summary_counts_attendance_and_metrics(self, client, club):
        ride = make_ride(client, "admin", club, publish_immediately=True)
        ride_id = ride["id"]
        base = f"{_url(club, ride_id)}/participants"

        assert join(client, "member", club, ride_id).status_code == 201
        assert join(client, "member2", club, ride_id).status_code == 201

        # member links their own Strava activity.
        resp = client.post(
            f"{base}/member/evidence/strava",
            json={
                "activity_id": "strava-123",
                "match_type": "time_window",
                "metrics": {"distance_m": 40000, "elevation_gain_m": 300, "moving_time_s": 5400},
            },
            headers=auth_headers("member"),
        )
        assert resp.status_code == 200

        resp = client.put(
            f"{base}/member2/attendance",
            json={"status": "no_show"},
            headers=auth_headers("admin"),
        )
        assert resp.status_code == 200

        resp = client.post(
            f"{base}/admin/evidence/manual",
            json={"evidence_id": "sign-in-sheet"},
            headers=auth_headers("admin"),
        )
        assert resp.status_code == 200

        assert _post(client, "admin", club, ride_id, "start").status_code == 200
        assert _post(client, "admin", club, ride_id, "complete").status_code == 200

        summary = client.get(
            _url(club, ride_id, "summary"),
            headers=auth_headers("member"),
        ).get_json()["data"]

        assert summary["ride_id"] == ride_id
        assert summary["participants_planned"] == 3
        assert summary["participants_attended"] == 2
        assert summary["participants_no_show"] == 1
        assert summary["strava_evidence_count"] == 1
        assert summary["manual_evidence_count"] == 1
        assert summary["metrics"]["total_distance_m"] == 40000.0
        assert summary["metrics"]["total_elevation_gain_m"] == 300.0
        assert summary["metrics"]["average_speed_kmh"] == pytest.approx(26.67)


# ═══════════════════════════════════════════════════════════════════════════
# GET /clubs/:club_id/rides
# ═══════════════════════════════════════════════════════════════════════════

class TestListRides:

    def test_drafts_excluded_by_default(self, client, club):
        make_ride(client, "member", club, title="Draft")
        make_ride(client, "captain", club, title="Published", publish_immediately=True)

        resp = client.get(_url(club), headers=auth_headers("member"))
        assert resp.status_code == 200
        titles = [r["title"] for r in resp.get_json()["data"]]
        assert titles == ["Published"]

    def test_include_drafts_requires_view_draft_rides(self, client, club):
        make_ride(client, "member", club, title="Draft")
        resp = client.get(_url(club) + "?include_drafts=true", headers=auth_headers("member"))
        assert resp.status_code == 403

    def test_captain_lists_drafts(self, client, club):
        make_ride(client, "member", club, title="Draft")
        resp = client.get(_url(club) + "?include_drafts=true", headers=auth_headers("captain"))
        assert resp.status_code == 200
        assert [r["title"] for r in resp.get_json()["data"]] == ["Draft"]

    def test_ordered_by_start_time_and_paginated(self, client, club):
        make_ride(client, "captain", club, title="Third", start_in_days=3, publish_immediately=True)
        make_ride(client, "captain", club, title="First", start_in_days=1, publish_immediately=True)
        make_ride(client, "captain", club, title="Second", start_in_days=2, publish_immediately=True)

        first = client.get(_url(club) + "?limit=2", headers=auth_headers("member")).get_json()
        assert [r["title"] for r in first["data"]] == ["First", "Second"]
        assert first["next_cursor"] is not None

        second = client.get(
            _url(club) + f"?limit=2&cursor={first['next_cursor']}",
            headers=auth_headers("member"),
        ).get_json()
        assert [r["title"] for r in second["data"]] == ["Third"]
        assert second["next_cursor"] is None

    def test_status_filter(self, client, club):
        ride = make_ride(client, "captain", club, title="Cancelled", publish_immediately=True)
        make_ride(client, "captain", club, title="Open", publish_immediately=True)
        _post(client, "captain", club, ride["id"], "cancel")  # captain lacks cancel_rides, creator override applies

        resp = client.get(_url(club) + "?status=cancelled", headers=auth_headers("member"))
        assert [r["title"] for r in resp.get_json()["data"]] == ["Cancelled"]

    def test_date_window_filter(self, client, club):
        make_ride(client, "captain", club, title="Soon", start_in_days=1, publish_immediately=True)
        make_ride(client, "captain", club, title="Later", start_in_days=10, publish_immediately=True)

        end = (datetime.now(timezone.utc) + timedelta(days=5)).strftime("%Y-%m-%dT%H:%M:%SZ")
        resp = client.get(_url(club) + f"?end_date={end}", headers=auth_headers("member"))
        assert [r["title"] for r in resp.get_json()["data"]] == ["Soon"]

    def test_malformed_cursor_returns_400(self, client, club):
        resp = client.get(_url(club) + "?cursor=%25%25%25", headers=auth_headers("member"))
        assert resp.status_code == 400
        assert resp.get_json()["error"]["field"] == "cursor"

    @pytest.mark.parametrize("bad_id", [{"x": 1}, "abc"])
    def test_cursor_with_non_integer_id_returns_400(self, client, club, bad_id):
        make_ride(client, "captain", club, title="A", start_in_days=1, publish_immediately=True)
        make_ride(client, "captain", club, title="B", start_in_days=2, publish_immediately=True)
        first = client.get(_url(club) + "?limit=1", headers=auth_headers("member")).get_json()

        encoded = first["next_cursor"]
        sort_value, _ = json.loads(base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4)))
        tampered = base64.urlsafe_b64encode(
            json.dumps([sort_value, bad_id]).encode()
        ).decode().rstrip("=")

        resp = client.get(_url(club) + f"?cursor={tampered}", headers=auth_headers("member"))
        assert resp.status_code == 400
        assert resp.get_json()["error"]["code"] == "INVALID_FIELD"
        assert resp.get_json()["error"]["field"] == "cursor"

    def test_end_before_start_returns_400(self, client, club):
        resp = client.get(
            _url(club) + "?start_date=2030-01-02T00:00:00Z&end_date=2030-01-01T00:00:00Z",
            headers=auth_headers("member"),
        )
        assert resp.status_code == 400
        assert resp.get_json()["error"]["field"] == "end_date"

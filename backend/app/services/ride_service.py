"""
services/ride_service.py — Ride lifecycle operations.

Every public function follows the same shape:
  1. load the ride (RIDE_NOT_FOUND if absent or owned by another club)
  2. ask the authorization gate for the operation's capability
  3. call ONE Ride aggregate method
  4. write the result through the persistence gateway

Capabilities:
  create   create_ride_proposals (+ publish_official_rides to publish immediately)
  get      ride visibility (can_view_ride)
  list     view_club_rides (+ view_draft_rides for include_drafts)
  update   manage_rides      — creator override applies
  publish  publish_official_rides
  cancel   cancel_rides      — creator override applies
  start    manage_rides      — creator override applies
  complete manage_rides      — creator override applies
  summary  ride visibility

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
  - Commits are the route's responsibility — the gateway only flushes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from backend.app.auth_context import AuthContext
from backend.app.errors import AppError, ErrorCode
from backend.app.models.participation import (
    AttendanceStatus,
    EvidenceType,
    Participation,
    ParticipationRole,
    ParticipationStatus,
)
from backend.app.models.ride import Ride, RideAudience, RideStatus
from backend.app.services import authorization_service, membership_service
from backend.app.services.capability_resolver import RideCapability
from backend.app.services.persistence_gateway import KeyRange, PersistenceGateway, Put
from backend.app.services.waitlist import load_waitlist, promote

logger = logging.getLogger(__name__)


# ── Serialisation ──────────────────────────────────────────────────────────

def iso(value: datetime | None) -> str | None:
    """ISO-8601 in UTC. Naive values (SQLite) are stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def serialize_ride(ride: Ride) -> dict:
    return {
        "id": ride.id,
        "club_id": ride.club_id,
        "title": ride.title,
        "description": ride.description,
        "ride_type": ride.ride_type.value,
        "difficulty": ride.difficulty.value,
        "status": ride.status.value,
        "scope": ride.scope.value,
        "audience": ride.audience.value,
        "start_date_time": iso(ride.start_date_time),
        "estimated_duration": ride.estimated_duration,
        "max_participants": ride.max_participants,
        "current_participants": ride.current_participants,
        "waitlist_count": ride.waitlist_count,
        "allow_waitlist": ride.allow_waitlist,
        "is_public": ride.is_public,
        "meeting_point": {
            "name": ride.meeting_point_name,
            "address": ride.meeting_point_address,
        },
        "created_by": ride.created_by,
        "published_by": ride.published_by,
        "published_at": iso(ride.published_at),
        "started_at": iso(ride.started_at),
        "completed_at": iso(ride.completed_at),
        "completion_notes": ride.completion_notes,
        "cancelled_at": iso(ride.cancelled_at),
        "cancellation_reason": ride.cancellation_reason,
        "created_at": iso(ride.created_at),
        "updated_at": iso(ride.updated_at),
    }


# ── Shared lookups ─────────────────────────────────────────────────────────

def get_ride_or_404(club_id: int, ride_id: int, gateway: PersistenceGateway) -> Ride:
    """Returns the Ride or raises RIDE_NOT_FOUND (404). A ride in another club is not found."""
    ride = gateway.get(Ride, ride_id)
    if ride is None or ride.club_id != club_id:
        raise AppError(
            ErrorCode.RIDE_NOT_FOUND,
            f"Ride {ride_id} does not exist in club {club_id}.",
            404,
        )
    return ride


def require_ride_visible(ride: Ride, auth_context: AuthContext, session: Session) -> None:
    """Raises INSUFFICIENT_PRIVILEGES (403) unless the caller may see the ride."""
    visible = authorization_service.can_view_ride(
        auth_context,
        ride.club_id,
        status=ride.status,
        scope=ride.scope,
        created_by=ride.created_by,
        is_public=ride.is_public,
        session=session,
    )
    if not visible:
        raise AppError(
            ErrorCode.INSUFFICIENT_PRIVILEGES,
            f"You do not have access to ride {ride.id}.",
            403,
        )


# ── Public service functions ───────────────────────────────────────────────

def create_ride(auth_context: AuthContext, club_id: int, data: dict, session: Session) -> dict:
    """
    Creates a ride in Draft (or Published when publish_immediately).

    The creator's Captain participation is written in the same atomic write
    as the ride, which is why current_participants starts at 1.

    Raises:
      AppError(CLUB_NOT_FOUND, 404)
      AppError(INSUFFICIENT_PRIVILEGES, 403) — no create_ride_proposals, or
                                               publish_immediately without
                                               publish_official_rides
    """
    membership_service.get_club_or_404(club_id, session)

    authorization_service.require_ride_capability(
        RideCapability.CREATE_RIDE_PROPOSALS,
        auth_context,
        club_id,
        session,
    )

    publish_immediately = bool(data.get("publish_immediately", False))
    if publish_immediately and not authorization_service.can_publish_ride(auth_context, club_id, session):
        raise AppError(
            ErrorCode.INSUFFICIENT_PRIVILEGES,
            "You may propose rides in this club but not publish them.",
            403,
            field="publish_immediately",
        )

    ride = Ride.create(
        club_id=club_id,
        created_by=auth_context.user_id,
        title=data["title"],
        description=data.get("description"),
        ride_type=data["ride_type"],
        difficulty=data["difficulty"],
        start_date_time=data["start_date_time"],
        estimated_duration=data["estimated_duration"],
        max_participants=data.get("max_participants"),
        meeting_point_name=data.get("meeting_point_name"),
        meeting_point_address=data.get("meeting_point_address"),
        allow_waitlist=data.get("allow_waitlist", True),
        is_public=data.get("is_public", False),
        publish_immediately=publish_immediately,
    )

    captain = Participation.confirmed(
        ride_id=None,
        club_id=club_id,
        user_id=auth_context.user_id,
        role=ParticipationRole.CAPTAIN,
    )
    captain.ride = ride

    gateway = PersistenceGateway(session)
    gateway.atomic_multi_write([Put(ride), Put(captain)])

    logger.info(
        "Ride %s created in club %s by %s (status=%s)",
        ride.id, club_id, auth_context.user_id, ride.status.value,
    )
    return serialize_ride(ride)


def get_ride(auth_context: AuthContext, club_id: int, ride_id: int, session: Session) -> dict:
    """Returns the ride plus the caller's ride capabilities in its club."""
    ride = get_ride_or_404(club_id, ride_id, PersistenceGateway(session))
    require_ride_visible(ride, auth_context, session)

    result = serialize_ride(ride)
    result["viewer_capabilities"] = authorization_service.get_user_ride_capabilities(
        auth_context, club_id, session,
    )
    return result


def list_club_rides(
        auth_context: AuthContext,
        club_id: int,
        query: dict,
        session: Session,
) -> dict:
    """
    Lists a club's rides by start time, one page at a time.

    query keys (all optional, validated by ListRidesQuerySchema):
      status, start_date, end_date, include_drafts, limit, cursor

    Drafts are left out unless include_drafts (which needs view_draft_rides).
    Each page is further filtered by ride visibility, so a page may hold
    fewer than `limit` items while next_cursor is still set.
    """
    authorization_service.require_ride_capability(
        RideCapability.VIEW_CLUB_RIDES,
        auth_context,
        club_id,
        session,
    )

    include_drafts = bool(query.get("include_drafts", False))
    if include_drafts:
        authorization_service.require_ride_capability(
            RideCapability.VIEW_DRAFT_RIDES,
            auth_context,
            club_id,
            session,
        )

    statuses = {query["status"]} if query.get("status") else set(RideStatus)
    if not include_drafts:
        statuses.discard(RideStatus.DRAFT)
    if not statuses:
        return {"items": [], "next_cursor": None}

    key_range = None
    if query.get("start_date") or query.get("end_date"):
        key_range = KeyRange("start_date_time", query.get("start_date"), query.get("end_date"))

    page = PersistenceGateway(session).query_by_index(
        Ride,
        {"club_id": club_id, "status": sorted(statuses, key=lambda s: s.value)},
        key_range=key_range,
        cursor=query.get("cursor"),
        limit=query.get("limit"),
        sort_column="start_date_time",
    )

    visible = [
        ride for ride in page.items
        if authorization_service.can_view_ride(
            auth_context,
            club_id,
            status=ride.status,
            scope=ride.scope,
            created_by=ride.created_by,
            is_public=ride.is_public,
            session=session,
        )
    ]
    return {
        "items": [serialize_ride(ride) for ride in visible],
        "next_cursor": page.next_cursor,
    }


def update_ride(
        auth_context: AuthContext,
        club_id: int,
        ride_id: int,
        changes: dict,
        session: Session,
) -> dict:
    """
    Partially updates a Draft or Published ride. Raising or clearing
    max_participants promotes waitlisted riders into the new slots, in the
    same atomic write as the ride.

    Raises:
      AppError(INSUFFICIENT_PRIVILEGES, 403) — no manage_rides and not the creator
      AppError(INVALID_RIDE_STATUS, 422)     — ride is past Published
      AppError(INVALID_FIELD, 400)           — max_participants below confirmed count
    """
    gateway = PersistenceGateway(session)
    ride = get_ride_or_404(club_id, ride_id, gateway)
    authorization_service.require_ride_capability(
        RideCapability.MANAGE_RIDES,
        auth_context,
        club_id,
        session,
        ride_id=ride.id,
        ride_created_by=ride.created_by,
    )

    waitlisted = []
    if "max_participants" in changes and ride.waitlist_count > 0:
        waitlisted = load_waitlist(ride.id, gateway)

    ride.update(changes)
    # Raised or cleared capacity goes to the waitlist before new joiners.
    promoted = promote(ride, waitlisted, limit=None)
    gateway.atomic_multi_write([Put(ride)] + [Put(p) for p in promoted])
    return serialize_ride(ride)


def publish_ride(
        auth_context: AuthContext,
        club_id: int,
        ride_id: int,
        session: Session,
        audience: RideAudience | None = None,
        is_public: bool | None = None,
) -> dict:
    gateway = PersistenceGateway(session)
    ride = get_ride_or_404(club_id, ride_id, gateway)
    authorization_service.require_ride_capability(
        RideCapability.PUBLISH_OFFICIAL_RIDES,
        auth_context,
        club_id,
        session,
        ride_id=ride.id,
        ride_created_by=ride.created_by,
    )

    ride.publish(auth_context.user_id, audience=audience, is_public=is_public)
    gateway.put(ride)
    logger.info("Ride %s published by %s", ride.id, auth_context.user_id)
    return serialize_ride(ride)


def cancel_ride(
        auth_context: AuthContext,
        club_id: int,
        ride_id: int,
        session: Session,
        reason: str | None = None,
) -> dict:
    gateway = PersistenceGateway(session)
    ride = get_ride_or_404(club_id, ride_id, gateway)
    authorization_service.require_ride_capability(
        RideCapability.CANCEL_RIDES,
        auth_context,
        club_id,
        session,
        ride_id=ride.id,
        ride_created_by=ride.created_by,
    )

    ride.cancel(cancelled_by=auth_context.user_id, reason=reason)
    gateway.put(ride)
    logger.info("Ride %s cancelled by %s", ride.id, auth_context.user_id)
    return serialize_ride(ride)


def start_ride(auth_context: AuthContext, club_id: int, ride_id: int, session: Session) -> dict:
    gateway = PersistenceGateway(session)
    ride = get_ride_or_404(club_id, ride_id, gateway)
    authorization_service.require_ride_capability(
        RideCapability.MANAGE_RIDES,
        auth_context,
        club_id,
        session,
        ride_id=ride.id,
        ride_created_by=ride.created_by,
    )

    ride.start(auth_context.user_id)
    gateway.put(ride)
    return serialize_ride(ride)


def complete_ride(
        auth_context: AuthContext,
        club_id: int,
        ride_id: int,
        session: Session,
        notes: str | None = None,
) -> dict:
    gateway = PersistenceGateway(session)
    ride = get_ride_or_404(club_id, ride_id, gateway)
    authorization_service.require_ride_capability(
        RideCapability.MANAGE_RIDES,
        auth_context,
        club_id,
        session,
        ride_id=ride.id,
        ride_created_by=ride.created_by,
    )

    ride.complete(auth_context.user_id, notes=notes)
    gateway.put(ride)
    return serialize_ride(ride)


def get_ride_summary(
        auth_context: AuthContext,
        club_id: int,
        ride_id: int,
        session: Session,
) -> dict | None:
    """Attendance summary for a Completed ride; None for any other status."""
    gateway = PersistenceGateway(session)
    ride = get_ride_or_404(club_id, ride_id, gateway)
    require_ride_visible(ride, auth_context, session)

    if ride.status != RideStatus.COMPLETED:
        return None

    page = gateway.query_by_index(Participation, {"ride_id": ride.id})
    return build_ride_summary(ride, page.items)


def build_ride_summary(ride: Ride, participations: list[Participation]) -> dict:
    """
    Counts planned/attended/no-show participants and aggregates Strava metrics.

    average_speed_kmh is total distance over total moving time, so long rides
    weigh more than short ones. None when no moving time was recorded.
    """
    planned = attended = no_show = strava = manual = 0
    total_distance_m = 0.0
    total_elevation_m = 0.0
    total_moving_time_s = 0.0

    for p in participations:
        if p.status != ParticipationStatus.CONFIRMED:
            continue
        planned += 1

        if p.attendance_status == AttendanceStatus.ATTENDED:
            attended += 1
        elif p.attendance_status == AttendanceStatus.NO_SHOW:
            no_show += 1

        if p.evidence_type == EvidenceType.STRAVA:
            strava += 1
            metrics = p.evidence_metrics or {}
            total_distance_m += float(metrics.get("distance_m") or 0)
            total_elevation_m += float(metrics.get("elevation_gain_m") or 0)
            total_moving_time_s += float(metrics.get("moving_time_s") or 0)
        elif p.evidence_type == EvidenceType.MANUAL:
            manual += 1

    average_speed_kmh = None
    if total_moving_time_s > 0:
        average_speed_kmh = round((total_distance_m / 1000) / (total_moving_time_s / 3600), 2)

    return {
        "ride_id": ride.id,
        "completed_at": iso(ride.completed_at),
        "participants_planned": planned,
        "participants_attended": attended,
        "participants_no_show": no_show,
        "strava_evidence_count": strava,
        "manual_evidence_count": manual,
        "metrics": {
            "total_distance_m": round(total_distance_m, 1),
            "total_elevation_gain_m": round(total_elevation_m, 1),
            "average_speed_kmh": average_speed_kmh,
        },
    }

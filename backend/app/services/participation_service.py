"""
services/participation_service.py — Join / leave / remove and the waitlist.

This module keeps a ride's counters and its participations consistent:

  Join      Published ride with room      → Confirmed, current_participants += 1
            full ride, waitlist allowed    → Waitlisted at position N+1, waitlist_count += 1
            full ride, no waitlist         → RIDE_FULL (409)
  Leave /   leaving a Confirmed slot       → current_participants -= 1, then Promotion
  Remove    leaving the waitlist           → waitlist_count -= 1, then Reorder
  Promotion lowest waitlist_position becomes Confirmed (if the ride can accept),
            then Reorder
  Reorder   remaining waitlisted rows renumbered 1..N in their current order

Invariants enforced here:
  - current_participants ≤ max_participants
  - waitlisted positions are exactly {1..waitlist_count} after every operation
  - a user has at most one participation per ride, whatever its status
  - a Captain can neither leave nor be removed (CANNOT_REMOVE_CAPTAIN)

Atomicity:
  Each operation collects the ride and every participation it touched and
  writes them with ONE PersistenceGateway.atomic_multi_write(). The ride's
  version check in that same flush is what stops two joins from both taking
  the last slot: the loser gets CONCURRENT_MODIFICATION (409).

  All reads happen before the first mutation so autoflush never writes a
  half-applied state ahead of the atomic write.

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
  - Commits are the route's responsibility — the gateway only flushes.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from backend.app.auth_context import AuthContext
from backend.app.errors import AppError, ErrorCode
from backend.app.models.participation import (
    ROLE_ORDER,
    STATUS_ORDER,
    AttendanceStatus,
    MatchType,
    Participation,
    ParticipationRole,
    ParticipationStatus,
)
from backend.app.models.ride import RideStatus
from backend.app.services import authorization_service
from backend.app.services.capability_resolver import RideCapability
from backend.app.services.persistence_gateway import PersistenceGateway, Put
from backend.app.services.ride_service import (
    get_ride_or_404,
    iso,
    require_ride_visible,
)
from backend.app.services.waitlist import load_waitlist, promote, reorder

logger = logging.getLogger(__name__)


# ── Serialisation ──────────────────────────────────────────────────────────

def serialize_participation(p: Participation) -> dict:
    evidence = p.evidence
    return {
        "id": p.id,
        "ride_id": p.ride_id,
        "club_id": p.club_id,
        "user_id": p.user_id,
        "role": p.role.value,
        "status": p.status.value,
        "waitlist_position": p.waitlist_position,
        "message": p.message,
        "joined_at": iso(p.joined_at),
        "attendance_status": p.attendance_status.value if p.attendance_status else None,
        "evidence": None if evidence is None else {
            "type": evidence.type.value,
            "reference": evidence.reference,
            "match_type": evidence.match_type.value if evidence.match_type else None,
            "linked_at": iso(evidence.linked_at),
            "metrics": evidence.metrics,
        },
        "confirmed_by": p.confirmed_by,
        "confirmed_at": iso(p.confirmed_at),
    }


# ── Private helpers ────────────────────────────────────────────────────────

def _find_participation(ride_id: int, user_id: str, gateway: PersistenceGateway) -> Participation | None:
    page = gateway.query_by_index(
        Participation,
        {"ride_id": ride_id, "user_id": user_id},
        limit=1,
    )
    return page.items[0] if page.items else None


def _get_participation_or_404(ride_id: int, user_id: str, gateway: PersistenceGateway) -> Participation:
    participation = _find_participation(ride_id, user_id, gateway)
    if participation is None:
        raise AppError(
            ErrorCode.PARTICIPATION_NOT_FOUND,
            f"User {user_id} is not participating in ride {ride_id}.",
            404,
        )
    return participation


def _load_for_attendance(
        auth_context: AuthContext,
        club_id: int,
        ride_id: int,
        target_user_id: str,
        gateway: PersistenceGateway,
        session: Session,
        allow_self: bool = False,
) -> Participation:
    ride = get_ride_or_404(club_id, ride_id, gateway)
    if not (allow_self and target_user_id == auth_context.user_id):
        authorization_service.require_ride_capability(
            RideCapability.MANAGE_PARTICIPANTS,
            auth_context,
            club_id,
            session,
            ride_id=ride.id,
        )
    return _get_participation_or_404(ride.id, target_user_id, gateway)


def _display_order(p: Participation) -> tuple:
    return (
        ROLE_ORDER.get(p.role, len(ROLE_ORDER)),
        STATUS_ORDER.get(p.status, len(STATUS_ORDER)),
        p.waitlist_position if p.waitlist_position is not None else float("inf"),
        iso(p.joined_at) or "",
        p.id or 0,
    )


def _depart(
        club_id: int,
        ride_id: int,
        user_id: str,
        session: Session,
        removed_by: str | None = None,
) -> Participation:
    """
    Shared leave/remove path. `removed_by` set means an admin removal.

    Raises:
      AppError(PARTICIPATION_NOT_FOUND, 404)
      AppError(CANNOT_REMOVE_CAPTAIN, 422)
      AppError(RIDE_NOT_FOUND, 404)
      AppError(INVALID_PARTICIPATION_STATUS, 422) — withdrawing twice
    """
    gateway = PersistenceGateway(session)

    participation = _get_participation_or_404(ride_id, user_id, gateway)
    if participation.is_captain:
        raise AppError(
            ErrorCode.CANNOT_REMOVE_CAPTAIN,
            "The ride captain cannot leave or be removed. Hand over the captain role first.",
            422,
        )

    ride = get_ride_or_404(club_id, ride_id, gateway)

    prior_status = participation.status
    waitlist = []
    if prior_status in (ParticipationStatus.CONFIRMED, ParticipationStatus.WAITLISTED):
        waitlist = load_waitlist(ride.id, gateway)

    # ── Mutations start here ──────────────────────────────────────────────
    if removed_by is None:
        participation.withdraw()
    else:
        participation.remove()

    touched: list = [participation]
    if prior_status == ParticipationStatus.CONFIRMED:
        ride.decrement_participants()
        touched.append(ride)
        touched.extend(promote(ride, waitlist))
    elif prior_status == ParticipationStatus.WAITLISTED:
        ride.decrement_waitlist()
        touched.append(ride)
        touched.extend(reorder([p for p in waitlist if p is not participation]))

    gateway.atomic_multi_write([Put(record) for record in touched])

    logger.info(
        "User %s %s ride %s (was %s)",
        user_id,
        "withdrew from" if removed_by is None else f"was removed by {removed_by} from",
        ride.id,
        prior_status.value,
    )
    return participation


# ── Public service functions ───────────────────────────────────────────────

def join_ride(
        auth_context: AuthContext,
        club_id: int,
        ride_id: int,
        session: Session,
        message: str | None = None,
) -> dict:
    """
    Joins the caller to a published ride, confirmed or waitlisted.

    Raises:
      AppError(RIDE_NOT_FOUND, 404)
      AppError(INSUFFICIENT_PRIVILEGES, 403) — no join_rides in the club
      AppError(ALREADY_PARTICIPATING, 409)   — any earlier participation, even withdrawn
      AppError(INVALID_RIDE_STATUS, 422)     — ride is not Published
      AppError(RIDE_FULL, 409)               — full and no waitlist
      AppError(CONCURRENT_MODIFICATION, 409) — lost the race for the ride row
    """
    gateway = PersistenceGateway(session)
    ride = get_ride_or_404(club_id, ride_id, gateway)

    authorization_service.require_ride_capability(
        RideCapability.JOIN_RIDES,
        auth_context,
        club_id,
        session,
        ride_id=ride.id,
    )

    user_id = auth_context.user_id
    if _find_participation(ride.id, user_id, gateway) is not None:
        raise AppError(
            ErrorCode.ALREADY_PARTICIPATING,
            f"You already have a participation record for ride {ride.id}.",
            409,
        )

    if ride.status != RideStatus.PUBLISHED:
        raise AppError(
            ErrorCode.INVALID_RIDE_STATUS,
            f"Ride {ride.id} is {ride.status.value} and cannot be joined.",
            422,
        )

    if ride.can_accept_participants():
        participation = Participation.confirmed(
            ride_id=ride.id,
            club_id=club_id,
            user_id=user_id,
            message=message,
        )
        ride.increment_participants()
    elif ride.is_waitlist_available():
        position = gateway.count_by_index(
            Participation,
            {"ride_id": ride.id, "status": ParticipationStatus.WAITLISTED},
        ) + 1
        participation = Participation.waitlisted(
            ride_id=ride.id,
            club_id=club_id,
            user_id=user_id,
            position=position,
            message=message,
        )
        ride.increment_waitlist()
    else:
        raise AppError(
            ErrorCode.RIDE_FULL,
            f"Ride {ride.id} is full and does not have a waitlist.",
            409,
        )

    gateway.atomic_multi_write([Put(ride), Put(participation)])

    logger.info(
        "User %s joined ride %s as %s%s",
        user_id,
        ride.id,
        participation.status.value,
        f" (position {participation.waitlist_position})" if participation.waitlist_position else "",
    )
    return serialize_participation(participation)


def leave_ride(auth_context: AuthContext, club_id: int, ride_id: int, session: Session) -> dict:
    """Withdraws the caller. No capability is needed to leave your own ride."""
    participation = _depart(club_id, ride_id, auth_context.user_id, session)
    return serialize_participation(participation)


def remove_participant(
        auth_context: AuthContext,
        club_id: int,
        ride_id: int,
        target_user_id: str,
        session: Session,
) -> dict:
    """Removes another user's participation. Requires manage_participants."""
    authorization_service.require_ride_capability(
        RideCapability.MANAGE_PARTICIPANTS,
        auth_context,
        club_id,
        session,
        ride_id=ride_id,
    )
    participation = _depart(
        club_id, ride_id, target_user_id, session,
        removed_by=auth_context.user_id,
    )
    return serialize_participation(participation)


def update_participant_role(
        auth_context: AuthContext,
        club_id: int,
        ride_id: int,
        target_user_id: str,
        new_role: ParticipationRole,
        session: Session,
) -> dict:
    """
    Changes a confirmed participant's ride role. Requires assign_leadership.

    A second Captain is allowed: promotion to Captain does not demote the
    existing one.

    Raises:
      AppError(PARTICIPATION_NOT_FOUND, 404)
      AppError(INVALID_PARTICIPATION_STATUS, 422) — not Confirmed
      AppError(INVALID_ROLE_TRANSITION, 422)      — e.g. Captain → Participant
    """
    gateway = PersistenceGateway(session)
    ride = get_ride_or_404(club_id, ride_id, gateway)
    authorization_service.require_ride_capability(
        RideCapability.ASSIGN_LEADERSHIP,
        auth_context,
        club_id,
        session,
        ride_id=ride.id,
    )

    participation = _get_participation_or_404(ride.id, target_user_id, gateway)
    previous_role = participation.role
    participation.update_role(ParticipationRole(new_role))
    gateway.put(participation)

    logger.info(
        "User %s role on ride %s changed %s → %s by %s",
        target_user_id, ride.id, previous_role.value, participation.role.value,
        auth_context.user_id,
    )
    return serialize_participation(participation)


def list_ride_participants(
        auth_context: AuthContext,
        club_id: int,
        ride_id: int,
        session: Session,
) -> list[dict]:
    """
    All participations of a ride, in display order:
    role (captain, leader, participant) → status → waitlist position → join time.
    """
    gateway = PersistenceGateway(session)
    ride = get_ride_or_404(club_id, ride_id, gateway)
    authorization_service.require_ride_capability(
        RideCapability.VIEW_CLUB_RIDES,
        auth_context,
        club_id,
        session,
        ride_id=ride.id,
    )
    require_ride_visible(ride, auth_context, session)

    page = gateway.query_by_index(Participation, {"ride_id": ride.id})
    ordered = sorted(page.items, key=_display_order)
    return [serialize_participation(p) for p in ordered]


def list_user_rides(auth_context: AuthContext, query: dict, session: Session) -> dict:
    """The caller's own participations, newest first, with the ride attached."""
    partition: dict = {"user_id": auth_context.user_id}
    if query.get("status"):
        partition["status"] = query["status"]
    if query.get("role"):
        partition["role"] = query["role"]

    page = PersistenceGateway(session).query_by_index(
        Participation,
        partition,
        cursor=query.get("cursor"),
        limit=query.get("limit"),
        sort_column="joined_at",
        descending=True,
    )

    items = []
    for p in page.items:
        item = serialize_participation(p)
        ride = p.ride
        item["ride"] = {
            "id": ride.id,
            "club_id": ride.club_id,
            "title": ride.title,
            "status": ride.status.value,
            "start_date_time": iso(ride.start_date_time),
        }
        items.append(item)
    return {"items": items, "next_cursor": page.next_cursor}


def update_attendance(
        auth_context: AuthContext,
        club_id: int,
        ride_id: int,
        target_user_id: str,
        status: AttendanceStatus,
        session: Session,
) -> dict:
    gateway = PersistenceGateway(session)
    participation = _load_for_attendance(auth_context, club_id, ride_id, target_user_id, gateway, session)
    participation.update_attendance(AttendanceStatus(status), confirmed_by=auth_context.user_id)
    gateway.put(participation)
    return serialize_participation(participation)


def link_manual_evidence(
        auth_context: AuthContext,
        club_id: int,
        ride_id: int,
        target_user_id: str,
        evidence_id: str,
        session: Session,
) -> dict:
    gateway = PersistenceGateway(session)
    participation = _load_for_attendance(auth_context, club_id, ride_id, target_user_id, gateway, session)
    participation.link_manual_evidence(evidence_id, confirmed_by=auth_context.user_id)
    gateway.put(participation)
    return serialize_participation(participation)


def link_strava_evidence(
        auth_context: AuthContext,
        club_id: int,
        ride_id: int,
        target_user_id: str,
        activity_id: str,
        match_type: MatchType,
        session: Session,
        metrics: dict | None = None,
) -> dict:
    """Links a Strava activity. The participant may link their own; others need manage_participants."""
    gateway = PersistenceGateway(session)
    participation = _load_for_attendance(
        auth_context, club_id, ride_id, target_user_id, gateway, session,
        allow_self=True,
    )
    participation.link_strava_evidence(
        activity_id,
        MatchType(match_type),
        linked_by=auth_context.user_id,
        metrics=metrics,
    )
    gateway.put(participation)
    return serialize_participation(participation)

"""
routes/participants.py — Ride participation route handlers.

Layer rules:
  - Parse, validate, call ONE service, commit, return envelope.
  - No business logic. No DB queries. No bare SQL.

Endpoints (url_prefix=/api/v1, base path /clubs/:club_id/rides/:ride_id):
  POST   /participants                                  → 201  join (confirmed or waitlisted)
  DELETE /participants/me                               → 200  leave
  GET    /participants                                  → 200  list participants
  PATCH  /participants/:user_id                         → 200  change role
  DELETE /participants/:user_id                         → 200  remove participant
  PUT    /participants/:user_id/attendance              → 200  record attendance
  POST   /participants/:user_id/evidence/manual         → 200  link manual evidence
  POST   /participants/:user_id/evidence/strava         → 200  link Strava activity

The literal "me" route is registered before "<user_id>" and Flask's static
segments win over converters, so DELETE .../participants/me always means
"leave", never "remove user 'me'".
"""

from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from backend.app.extensions import db
from backend.app.middleware.auth_middleware import require_auth
from backend.app.schemas.participation_schema import (
    AttendanceSchema,
    JoinRideSchema,
    ManualEvidenceSchema,
    StravaEvidenceSchema,
    UpdateRoleSchema,
)
from backend.app.services import participation_service

participants_bp = Blueprint("participants", __name__)

_BASE = "/clubs/<int:club_id>/rides/<int:ride_id>/participants"


@participants_bp.route(_BASE, methods=["POST"])
@require_auth
def join_ride(club_id: int, ride_id: int):
    """POST .../participants — Join a published ride; waitlisted when it is full."""
    data = JoinRideSchema().load(request.get_json(force=True, silent=True) or {})
    result = participation_service.join_ride(
        auth_context=g.auth_context,
        club_id=club_id,
        ride_id=ride_id,
        session=db.session,
        message=data.get("message"),
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 201


@participants_bp.route(f"{_BASE}/me", methods=["DELETE"])
@require_auth
def leave_ride(club_id: int, ride_id: int):
    """DELETE .../participants/me — Withdraw. The next waitlisted rider is promoted."""
    result = participation_service.leave_ride(
        auth_context=g.auth_context,
        club_id=club_id,
        ride_id=ride_id,
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@participants_bp.route(_BASE, methods=["GET"])
@require_auth
def list_participants(club_id: int, ride_id: int):
    result = participation_service.list_ride_participants(
        auth_context=g.auth_context,
        club_id=club_id,
        ride_id=ride_id,
        session=db.session,
    )
    return jsonify({"data": result, "warnings": []}), 200


@participants_bp.route(f"{_BASE}/<string:user_id>", methods=["PATCH"])
@require_auth
def update_participant_role(club_id: int, ride_id: int, user_id: str):
    data = UpdateRoleSchema().load(request.get_json(force=True) or {})
    result = participation_service.update_participant_role(
        auth_context=g.auth_context,
        club_id=club_id,
        ride_id=ride_id,
        target_user_id=user_id,
        new_role=data["role"],
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@participants_bp.route(f"{_BASE}/<string:user_id>", methods=["DELETE"])
@require_auth
def remove_participant(club_id: int, ride_id: int, user_id: str):
    result = participation_service.remove_participant(
        auth_context=g.auth_context,
        club_id=club_id,
        ride_id=ride_id,
        target_user_id=user_id,
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@participants_bp.route(f"{_BASE}/<string:user_id>/attendance", methods=["PUT"])
@require_auth
def update_attendance(club_id: int, ride_id: int, user_id: str):
    data = AttendanceSchema().load(request.get_json(force=True) or {})
    result = participation_service.update_attendance(
        auth_context=g.auth_context,
        club_id=club_id,
        ride_id=ride_id,
        target_user_id=user_id,
        status=data["status"],
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@participants_bp.route(f"{_BASE}/<string:user_id>/evidence/manual", methods=["POST"])
@require_auth
def link_manual_evidence(club_id: int, ride_id: int, user_id: str):
    data = ManualEvidenceSchema().load(request.get_json(force=True) or {})
    result = participation_service.link_manual_evidence(
        auth_context=g.auth_context,
        club_id=club_id,
        ride_id=ride_id,
        target_user_id=user_id,
        evidence_id=data["evidence_id"],
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@participants_bp.route(f"{_BASE}/<string:user_id>/evidence/strava", methods=["POST"])
@require_auth
def link_strava_evidence(club_id: int, ride_id: int, user_id: str):
    data = StravaEvidenceSchema().load(request.get_json(force=True) or {})
    result = participation_service.link_strava_evidence(
        auth_context=g.auth_context,
        club_id=club_id,
        ride_id=ride_id,
        target_user_id=user_id,
        activity_id=data["activity_id"],
        match_type=data["match_type"],
        session=db.session,
        metrics=data.get("metrics"),
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200

"""
routes/rides.py — Ride lifecycle route handlers.

Layer rules:
  - Parse, validate, call ONE service, commit, return envelope.
  - No business logic. No DB queries. No bare SQL.

Endpoints (url_prefix=/api/v1):
  POST   /clubs/:club_id/rides                         → 201  create ride
  GET    /clubs/:club_id/rides                         → 200  list club rides (paged)
  GET    /clubs/:club_id/rides/:ride_id                → 200  get ride
  PATCH  /clubs/:club_id/rides/:ride_id                → 200  update ride
  POST   /clubs/:club_id/rides/:ride_id/publish        → 200  publish
  POST   /clubs/:club_id/rides/:ride_id/cancel         → 200  cancel
  POST   /clubs/:club_id/rides/:ride_id/start          → 200  start
  POST   /clubs/:club_id/rides/:ride_id/complete       → 200  complete
  GET    /clubs/:club_id/rides/:ride_id/summary        → 200  attendance summary
"""

from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from backend.app.extensions import db
from backend.app.middleware.auth_middleware import require_auth
from backend.app.schemas.ride_schema import (
    CancelRideSchema,
    CompleteRideSchema,
    CreateRideSchema,
    ListRidesQuerySchema,
    PublishRideSchema,
    UpdateRideSchema,
)
from backend.app.services import ride_service

rides_bp = Blueprint("rides", __name__)


def page_limit(requested: int | None) -> int:
    """Applies RIDES_PAGE_SIZE as the default and RIDES_PAGE_SIZE_MAX as the ceiling."""
    limit = requested or current_app.config.get("RIDES_PAGE_SIZE", 20)
    return min(limit, current_app.config.get("RIDES_PAGE_SIZE_MAX", 100))


def _optional_json() -> dict:
    """Body for endpoints where the JSON payload may be omitted entirely."""
    return request.get_json(force=True, silent=True) or {}


@rides_bp.route("/clubs/<int:club_id>/rides", methods=["POST"])
@require_auth
def create_ride(club_id: int):
    """POST /clubs/:club_id/rides — Propose (or publish) a ride. Caller becomes its captain."""
    data = CreateRideSchema().load(request.get_json(force=True) or {})
    result = ride_service.create_ride(
        auth_context=g.auth_context,
        club_id=club_id,
        data=data,
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 201


@rides_bp.route("/clubs/<int:club_id>/rides", methods=["GET"])
@require_auth
def list_rides(club_id: int):
    """GET /clubs/:club_id/rides — Club rides by start time, filtered by visibility."""
    query = ListRidesQuerySchema().load(request.args.to_dict())
    query["limit"] = page_limit(query.get("limit"))
    result = ride_service.list_club_rides(
        auth_context=g.auth_context,
        club_id=club_id,
        query=query,
        session=db.session,
    )
    return jsonify({
        "data": result["items"],
        "next_cursor": result["next_cursor"],
        "warnings": [],
    }), 200


@rides_bp.route("/clubs/<int:club_id>/rides/<int:ride_id>", methods=["GET"])
@require_auth
def get_ride(club_id: int, ride_id: int):
    result = ride_service.get_ride(
        auth_context=g.auth_context,
        club_id=club_id,
        ride_id=ride_id,
        session=db.session,
    )
    return jsonify({"data": result, "warnings": []}), 200


@rides_bp.route("/clubs/<int:club_id>/rides/<int:ride_id>", methods=["PATCH"])
@require_auth
def update_ride(club_id: int, ride_id: int):
    """PATCH /clubs/:club_id/rides/:ride_id — Draft and Published rides only."""
    changes = UpdateRideSchema().load(request.get_json(force=True) or {})
    result = ride_service.update_ride(
        auth_context=g.auth_context,
        club_id=club_id,
        ride_id=ride_id,
        changes=changes,
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@rides_bp.route("/clubs/<int:club_id>/rides/<int:ride_id>/publish", methods=["POST"])
@require_auth
def publish_ride(club_id: int, ride_id: int):
    data = PublishRideSchema().load(_optional_json())
    result = ride_service.publish_ride(
        auth_context=g.auth_context,
        club_id=club_id,
        ride_id=ride_id,
        session=db.session,
        audience=data.get("audience"),
        is_public=data.get("is_public"),
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@rides_bp.route("/clubs/<int:club_id>/rides/<int:ride_id>/cancel", methods=["POST"])
@require_auth
def cancel_ride(club_id: int, ride_id: int):
    data = CancelRideSchema().load(_optional_json())
    result = ride_service.cancel_ride(
        auth_context=g.auth_context,
        club_id=club_id,
        ride_id=ride_id,
        session=db.session,
        reason=data.get("reason"),
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@rides_bp.route("/clubs/<int:club_id>/rides/<int:ride_id>/start", methods=["POST"])
@require_auth
def start_ride(club_id: int, ride_id: int):
    result = ride_service.start_ride(
        auth_context=g.auth_context,
        club_id=club_id,
        ride_id=ride_id,
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@rides_bp.route("/clubs/<int:club_id>/rides/<int:ride_id>/complete", methods=["POST"])
@require_auth
def complete_ride(club_id: int, ride_id: int):
    data = CompleteRideSchema().load(_optional_json())
    result = ride_service.complete_ride(
        auth_context=g.auth_context,
        club_id=club_id,
        ride_id=ride_id,
        session=db.session,
        notes=data.get("notes"),
    )
    db.session.commit()
    return jsonify({"data": result, "warnings": []}), 200


@rides_bp.route("/clubs/<int:club_id>/rides/<int:ride_id>/summary", methods=["GET"])
@require_auth
def get_ride_summary(club_id: int, ride_id: int):
    """GET .../summary — null data until the ride is completed."""
    result = ride_service.get_ride_summary(
        auth_context=g.auth_context,
        club_id=club_id,
        ride_id=ride_id,
        session=db.session,
    )
    return jsonify({"data": result, "warnings": []}), 200

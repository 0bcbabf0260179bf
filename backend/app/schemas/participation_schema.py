"""
schemas/participation_schema.py — Marshmallow schemas for participant endpoints.

Validation responsibility:
  - This file: field types, lengths, enum values, metric ranges.
  - models/participation.py: status-dependent rules (INVALID_PARTICIPATION_STATUS,
    INVALID_ROLE_TRANSITION).
  - services/participation_service.py: capacity, waitlist, captain protection,
    capabilities.

IMPORTANT: Inherits from marshmallow.Schema directly — never ma.Schema.
"""

from __future__ import annotations

from marshmallow import Schema, fields, validate

from backend.app.models.participation import (
    AttendanceStatus,
    MatchType,
    ParticipationRole,
    ParticipationStatus,
)


class JoinRideSchema(Schema):
    """POST /clubs/:club_id/rides/:ride_id/participants — body optional."""

    message = fields.Str(
        load_default=None,
        allow_none=True,
        validate=validate.Length(max=500),
    )


class UpdateRoleSchema(Schema):
    """PATCH /clubs/:club_id/rides/:ride_id/participants/:user_id"""

    role = fields.Enum(ParticipationRole, by_value=True, required=True)


class AttendanceSchema(Schema):
    """PUT /clubs/:club_id/rides/:ride_id/participants/:user_id/attendance"""

    status = fields.Enum(AttendanceStatus, by_value=True, required=True)


class ManualEvidenceSchema(Schema):
    """POST .../participants/:user_id/evidence/manual"""

    evidence_id = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=128),
    )


class ActivityMetricsSchema(Schema):
    distance_m = fields.Float(validate=validate.Range(min=0))
    elevation_gain_m = fields.Float(validate=validate.Range(min=0))
    moving_time_s = fields.Int(validate=validate.Range(min=0))


class StravaEvidenceSchema(Schema):
    """POST .../participants/:user_id/evidence/strava"""

    activity_id = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=128),
    )
    match_type = fields.Enum(MatchType, by_value=True, load_default=MatchType.MANUAL)
    metrics = fields.Nested(ActivityMetricsSchema, load_default=None, allow_none=True)


class ListUserRidesQuerySchema(Schema):
    """GET /users/me/rides query string."""

    status = fields.Enum(ParticipationStatus, by_value=True, load_default=None)
    role = fields.Enum(ParticipationRole, by_value=True, load_default=None)
    limit = fields.Int(
        load_default=None,
        validate=validate.Range(min=1, max=100, error="limit must be between 1 and 100."),
    )
    cursor = fields.Str(load_default=None)

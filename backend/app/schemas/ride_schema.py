"""
schemas/ride_schema.py — Marshmallow schemas for ride endpoints.

Validation responsibility:
  - This file: field types, lengths, enum values, ranges, start time in the
    future, non-empty-after-trim strings, list query bounds.
  - models/ride.py (Ride aggregate):
      - INVALID_RIDE_STATUS (422) — lifecycle transitions
      - max_participants not below current_participants (needs the row)
  - services/ride_service.py:
      - INSUFFICIENT_PRIVILEGES (403), RIDE_NOT_FOUND / CLUB_NOT_FOUND (404)

IMPORTANT: Inherits from marshmallow.Schema directly — never ma.Schema.
           See extensions.py for the full explanation.
"""

from __future__ import annotations

from datetime import datetime, timezone

from marshmallow import (
    Schema,
    ValidationError,
    fields,
    validate,
    post_load,
    validates,
    validates_schema,
)

from backend.app.models.ride import RideAudience, RideDifficulty, RideStatus, RideType


def _validate_non_empty_after_trim(value: str) -> None:
    """Mirrors the DB CHECK(LENGTH(TRIM(...)) > 0) constraint at the API layer."""
    if not value.strip():
        raise ValidationError("This field must not be blank or contain only whitespace.")


def _validate_in_future(value: datetime) -> None:
    if value <= datetime.now(timezone.utc):
        raise ValidationError("start_date_time must be in the future.")


def _to_utc(data: dict, *keys: str) -> dict:
    """Stores every timestamp in UTC whatever offset the client sent."""
    for key in keys:
        if data.get(key) is not None:
            data[key] = data[key].astimezone(timezone.utc)
    return data


# ── Shared ride fields ─────────────────────────────────────────────────────
# Create requires title/start/duration; PATCH makes everything optional.

def _title(required: bool) -> fields.Str:
    return fields.Str(
        required=required,
        validate=[
            validate.Length(min=1, max=200, error="Title must be between 1 and 200 characters."),
            _validate_non_empty_after_trim,
        ],
    )


def _start_date_time(required: bool) -> fields.AwareDateTime:
    return fields.AwareDateTime(
        required=required,
        default_timezone=timezone.utc,
        validate=_validate_in_future,
    )


def _estimated_duration(required: bool) -> fields.Int:
    # Minutes; a ride longer than 24 hours is a data-entry mistake.
    return fields.Int(
        required=required,
        strict=True,
        validate=validate.Range(min=1, max=1440, error="estimated_duration must be 1–1440 minutes."),
    )


def _max_participants() -> fields.Int:
    return fields.Int(
        strict=True,
        allow_none=True,
        validate=validate.Range(min=1, max=500, error="max_participants must be between 1 and 500."),
    )


class CreateRideSchema(Schema):
    """
    POST /clubs/:club_id/rides

    publish_immediately additionally needs publish_official_rides; that is a
    capability question and is answered in ride_service.create_ride().
    """

    title = _title(required=True)
    description = fields.Str(
        load_default=None,
        allow_none=True,
        validate=validate.Length(max=2000),
    )
    ride_type = fields.Enum(RideType, by_value=True, load_default=RideType.SOCIAL)
    difficulty = fields.Enum(RideDifficulty, by_value=True, load_default=RideDifficulty.INTERMEDIATE)
    start_date_time = _start_date_time(required=True)
    estimated_duration = _estimated_duration(required=True)
    max_participants = _max_participants()
    meeting_point_name = fields.Str(allow_none=True, validate=validate.Length(max=200))
    meeting_point_address = fields.Str(allow_none=True, validate=validate.Length(max=500))
    allow_waitlist = fields.Bool(load_default=True)
    is_public = fields.Bool(load_default=False)
    publish_immediately = fields.Bool(load_default=False)

    @post_load
    def normalise_timestamps(self, data: dict, **kwargs) -> dict:
        return _to_utc(data, "start_date_time")


class UpdateRideSchema(Schema):
    """PATCH /clubs/:club_id/rides/:ride_id — every field optional, at least one required."""

    title = _title(required=False)
    description = fields.Str(allow_none=True, validate=validate.Length(max=2000))
    ride_type = fields.Enum(RideType, by_value=True)
    difficulty = fields.Enum(RideDifficulty, by_value=True)
    start_date_time = _start_date_time(required=False)
    estimated_duration = _estimated_duration(required=False)
    max_participants = _max_participants()
    meeting_point_name = fields.Str(allow_none=True, validate=validate.Length(max=200))
    meeting_point_address = fields.Str(allow_none=True, validate=validate.Length(max=500))
    allow_waitlist = fields.Bool()
    is_public = fields.Bool()
    audience = fields.Enum(RideAudience, by_value=True)

    @validates_schema
    def validate_not_empty(self, data: dict, **kwargs) -> None:
        if not data:
            raise ValidationError("At least one field must be provided.")

    @post_load
    def normalise_timestamps(self, data: dict, **kwargs) -> dict:
        return _to_utc(data, "start_date_time")


class PublishRideSchema(Schema):
    """POST /clubs/:club_id/rides/:ride_id/publish — body optional."""

    audience = fields.Enum(RideAudience, by_value=True, load_default=None)
    is_public = fields.Bool(load_default=None, allow_none=True)


class CancelRideSchema(Schema):
    """POST /clubs/:club_id/rides/:ride_id/cancel — reason is recorded, never enforced."""

    reason = fields.Str(
        load_default=None,
        allow_none=True,
        validate=validate.Length(max=500),
    )


class CompleteRideSchema(Schema):
    """POST /clubs/:club_id/rides/:ride_id/complete"""

    notes = fields.Str(
        load_default=None,
        allow_none=True,
        validate=validate.Length(max=2000),
    )


class ListRidesQuerySchema(Schema):
    """GET /clubs/:club_id/rides query string."""

    status = fields.Enum(RideStatus, by_value=True, load_default=None)
    start_date = fields.AwareDateTime(default_timezone=timezone.utc, load_default=None)
    end_date = fields.AwareDateTime(default_timezone=timezone.utc, load_default=None)
    include_drafts = fields.Bool(load_default=False)
    limit = fields.Int(
        load_default=None,
        validate=validate.Range(min=1, max=100, error="limit must be between 1 and 100."),
    )
    cursor = fields.Str(load_default=None)

    @validates("cursor")
    def validate_cursor(self, value, **kwargs) -> None:
        if value is not None and not value.strip():
            raise ValidationError("cursor must not be blank.")

    @validates_schema
    def validate_date_window(self, data: dict, **kwargs) -> None:
        start, end = data.get("start_date"), data.get("end_date")
        if start and end and start > end:
            raise ValidationError({"end_date": ["end_date must not be before start_date."]})

    @post_load
    def normalise_timestamps(self, data: dict, **kwargs) -> dict:
        return _to_utc(data, "start_date", "end_date")

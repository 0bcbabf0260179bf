"""
models/ride.py — Ride table definition and ride lifecycle (RideAggregate).

Lifecycle (forward only; Completed and Cancelled are terminal):

    Draft ──publish──▶ Published ──start──▶ Active ──complete──▶ Completed
      │                    │                  │
      └──────cancel────────┴──────cancel──────┴────────▶ Cancelled

Invariants:
  - current_participants ≤ max_participants whenever max_participants is set.
  - current_participants and waitlist_count never go below zero.
  - current_participants starts at 1: the creator is an implicit confirmed
    participant (a Captain participation is written alongside the ride).
  - Every mutator stamps updated_at.

Concurrency:
  `version` is SQLAlchemy's version_id_col. Every UPDATE of a ride row is
  issued as `... WHERE id = :id AND version = :version`; a concurrent writer
  that got there first makes the flush raise StaleDataError, which the
  persistence gateway maps to CONCURRENT_MODIFICATION (409). The DB CHECK
  constraints below are the last line for the counter invariants.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from types import MappingProxyType

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.errors import AppError, ErrorCode
from backend.app.extensions import db
from backend.app.models.enums import enum_values


# ── Enum Definitions ───────────────────────────────────────────────────────
# Imported by schemas and services. Do not duplicate these as plain string
# constants anywhere else in the codebase.

class RideStatus(str, enum.Enum):
    DRAFT     = "draft"
    PUBLISHED = "published"
    ACTIVE    = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RideScope(str, enum.Enum):
    CLUB = "club"


class RideAudience(str, enum.Enum):
    INVITE_ONLY  = "invite_only"
    MEMBERS_ONLY = "members_only"
    PUBLIC       = "public_read_only"


class RideType(str, enum.Enum):
    TRAINING    = "training"
    SOCIAL      = "social"
    COMPETITIVE = "competitive"
    ADVENTURE   = "adventure"
    MAINTENANCE = "maintenance"


class RideDifficulty(str, enum.Enum):
    BEGINNER     = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED     = "advanced"
    EXPERT       = "expert"


# Allowed forward moves. Anything not listed is an INVALID_RIDE_STATUS.
RIDE_TRANSITIONS: MappingProxyType = MappingProxyType({
    RideStatus.DRAFT:     frozenset({RideStatus.PUBLISHED, RideStatus.CANCELLED}),
    RideStatus.PUBLISHED: frozenset({RideStatus.ACTIVE, RideStatus.CANCELLED}),
    RideStatus.ACTIVE:    frozenset({RideStatus.COMPLETED, RideStatus.CANCELLED}),
    RideStatus.COMPLETED: frozenset(),
    RideStatus.CANCELLED: frozenset(),
})

# Fields a PATCH may change. Status, counters and bookkeeping are not here.
UPDATABLE_FIELDS: frozenset[str] = frozenset({
    "title",
    "description",
    "ride_type",
    "difficulty",
    "start_date_time",
    "estimated_duration",
    "max_participants",
    "meeting_point_name",
    "meeting_point_address",
    "allow_waitlist",
    "is_public",
    "audience",
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=24,
        values_callable=enum_values,
    )


# ── Model ──────────────────────────────────────────────────────────────────

class Ride(db.Model):
    __tablename__ = "rides"

    __table_args__ = (
        CheckConstraint(
            "current_participants >= 0",
            name="ck_rides_current_participants_nonnegative",
        ),
        CheckConstraint(
            "waitlist_count >= 0",
            name="ck_rides_waitlist_count_nonnegative",
        ),
        CheckConstraint(
            "max_participants IS NULL OR max_participants >= 1",
            name="ck_rides_max_participants_positive",
        ),
        CheckConstraint(
            "max_participants IS NULL OR current_participants <= max_participants",
            name="ck_rides_capacity",
        ),
        CheckConstraint(
            "estimated_duration > 0",
            name="ck_rides_estimated_duration_positive",
        ),
        CheckConstraint(
            "LENGTH(TRIM(title)) > 0",
            name="ck_rides_title_nonempty",
        ),
        # Club ride listings are range queries on start time within a club.
        Index("idx_rides_club_start", "club_id", "start_date_time"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    club_id: Mapped[int] = mapped_column(
        ForeignKey("clubs.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    title:       Mapped[str]        = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    ride_type: Mapped[RideType] = mapped_column(
        _enum_column(RideType, "ride_type_enum"),
        nullable=False,
        default=RideType.SOCIAL,
    )

    difficulty: Mapped[RideDifficulty] = mapped_column(
        _enum_column(RideDifficulty, "ride_difficulty_enum"),
        nullable=False,
        default=RideDifficulty.INTERMEDIATE,
    )

    status: Mapped[RideStatus] = mapped_column(
        _enum_column(RideStatus, "ride_status_enum"),
        nullable=False,
        default=RideStatus.DRAFT,
        index=True,
    )

    scope: Mapped[RideScope] = mapped_column(
        _enum_column(RideScope, "ride_scope_enum"),
        nullable=False,
        default=RideScope.CLUB,
    )

    audience: Mapped[RideAudience] = mapped_column(
        _enum_column(RideAudience, "ride_audience_enum"),
        nullable=False,
        default=RideAudience.INVITE_ONLY,
    )

    start_date_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    # Minutes.
    estimated_duration: Mapped[int] = mapped_column(Integer, nullable=False)

    # NULL = unlimited.
    max_participants:     Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_participants: Mapped[int]        = mapped_column(Integer, nullable=False, default=0)
    waitlist_count:       Mapped[int]        = mapped_column(Integer, nullable=False, default=0)

    allow_waitlist: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_public:      Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    meeting_point_name:    Mapped[str | None] = mapped_column(String(200), nullable=True)
    meeting_point_address: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_by:   Mapped[str]             = mapped_column(String(64), nullable=False)
    published_by: Mapped[str | None]      = mapped_column(String(64), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    started_by: Mapped[str | None]      = mapped_column(String(64), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    completed_by:     Mapped[str | None]      = mapped_column(String(64), nullable=True)
    completed_at:     Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_notes: Mapped[str | None]      = mapped_column(Text, nullable=True)

    cancelled_by:        Mapped[str | None]      = mapped_column(String(64), nullable=True)
    cancelled_at:        Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None]      = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # ── Construction ───────────────────────────────────────────────────────

    @classmethod
    def create(
            cls,
            *,
            club_id: int,
            created_by: str,
            title: str,
            start_date_time: datetime,
            estimated_duration: int,
            description: str | None = None,
            ride_type: RideType = RideType.SOCIAL,
            difficulty: RideDifficulty = RideDifficulty.INTERMEDIATE,
            max_participants: int | None = None,
            meeting_point_name: str | None = None,
            meeting_point_address: str | None = None,
            allow_waitlist: bool = True,
            is_public: bool = False,
            publish_immediately: bool = False,
    ) -> "Ride":
        """
        Builds a new ride in Draft (or Published when publish_immediately).

        Drafts are invite-only until published; published rides are visible
        to members. The creator occupies the first confirmed slot.
        """
        now = _utcnow()
        ride = cls(
            club_id=club_id,
            created_by=created_by,
            title=title,
            description=description,
            ride_type=ride_type,
            difficulty=difficulty,
            status=RideStatus.DRAFT,
            scope=RideScope.CLUB,
            audience=RideAudience.INVITE_ONLY,
            start_date_time=start_date_time,
            estimated_duration=estimated_duration,
            max_participants=max_participants,
            current_participants=1,
            waitlist_count=0,
            meeting_point_name=meeting_point_name,
            meeting_point_address=meeting_point_address,
            allow_waitlist=allow_waitlist,
            is_public=is_public,
            created_at=now,
            updated_at=now,
        )
        if publish_immediately:
            ride.status = RideStatus.PUBLISHED
            ride.audience = RideAudience.MEMBERS_ONLY
            ride.published_by = created_by
            ride.published_at = now
        return ride

    # ── Queries ────────────────────────────────────────────────────────────

    def can_be_published(self) -> bool:
        return self.status == RideStatus.DRAFT

    def can_be_updated(self) -> bool:
        return self.status in (RideStatus.DRAFT, RideStatus.PUBLISHED)

    def can_be_cancelled(self) -> bool:
        return RideStatus.CANCELLED in RIDE_TRANSITIONS[self.status]

    def can_be_started(self) -> bool:
        return self.status == RideStatus.PUBLISHED

    def can_be_completed(self) -> bool:
        return self.status == RideStatus.ACTIVE

    def has_capacity(self) -> bool:
        return (
            self.max_participants is None
            or self.current_participants < self.max_participants
        )

    def can_accept_participants(self) -> bool:
        return self.status == RideStatus.PUBLISHED and self.has_capacity()

    def is_waitlist_available(self) -> bool:
        return (
            bool(self.allow_waitlist)
            and self.max_participants is not None
            and self.current_participants >= self.max_participants
        )

    # ── Lifecycle mutators ─────────────────────────────────────────────────

    def publish(
            self,
            published_by: str,
            audience: RideAudience | None = None,
            is_public: bool | None = None,
    ) -> None:
        if not self.can_be_published():
            raise self._invalid_status("published")
        now = _utcnow()
        self.status = RideStatus.PUBLISHED
        self.audience = audience or RideAudience.MEMBERS_ONLY
        if is_public is not None:
            self.is_public = is_public
        self.published_by = published_by
        self.published_at = now
        self.updated_at = now

    def update(self, changes: dict) -> None:
        """
        Applies a partial update. Only UPDATABLE_FIELDS may appear in `changes`.

        Raises:
          AppError(INVALID_RIDE_STATUS, 422) — ride is Active, Completed or Cancelled
          AppError(INVALID_FIELD, 400)       — max_participants below current count
        """
        if not self.can_be_updated():
            raise self._invalid_status("updated")

        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise AppError(
                ErrorCode.INVALID_FIELD,
                f"Field {sorted(unknown)[0]!r} cannot be updated.",
                400,
                field=sorted(unknown)[0],
            )

        if "max_participants" in changes:
            new_max = changes["max_participants"]
            if new_max is not None and new_max < self.current_participants:
                raise AppError(
                    ErrorCode.INVALID_FIELD,
                    f"max_participants cannot be lower than the "
                    f"{self.current_participants} confirmed participants.",
                    400,
                    field="max_participants",
                )

        for key, value in changes.items():
            setattr(self, key, value)
        self.updated_at = _utcnow()

    def cancel(self, cancelled_by: str | None = None, reason: str | None = None) -> None:
        if not self.can_be_cancelled():
            raise self._invalid_status("cancelled")
        now = _utcnow()
        self.status = RideStatus.CANCELLED
        self.cancelled_by = cancelled_by
        self.cancelled_at = now
        self.cancellation_reason = reason
        self.updated_at = now

    def start(self, started_by: str) -> None:
        if not self.can_be_started():
            raise self._invalid_status("started")
        now = _utcnow()
        self.status = RideStatus.ACTIVE
        self.started_by = started_by
        self.started_at = now
        self.updated_at = now

    def complete(self, completed_by: str, notes: str | None = None) -> None:
        if not self.can_be_completed():
            raise self._invalid_status("completed")
        now = _utcnow()
        self.status = RideStatus.COMPLETED
        self.completed_by = completed_by
        self.completed_at = now
        self.completion_notes = notes
        self.updated_at = now

    # ── Counters (floor at zero) ───────────────────────────────────────────

    def increment_participants(self) -> None:
        self.current_participants = (self.current_participants or 0) + 1
        self.updated_at = _utcnow()

    def decrement_participants(self) -> None:
        self.current_participants = max(0, (self.current_participants or 0) - 1)
        self.updated_at = _utcnow()

    def increment_waitlist(self) -> None:
        self.waitlist_count = (self.waitlist_count or 0) + 1
        self.updated_at = _utcnow()

    def decrement_waitlist(self) -> None:
        self.waitlist_count = max(0, (self.waitlist_count or 0) - 1)
        self.updated_at = _utcnow()

    # ── Private helpers ────────────────────────────────────────────────────

    def _invalid_status(self, action: str) -> AppError:
        status = self.status.value if self.status else None
        return AppError(
            ErrorCode.INVALID_RIDE_STATUS,
            f"Ride {self.id} cannot be {action} while {status}.",
            422,
        )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Ride id={self.id} club_id={self.club_id} "
            f"status={self.status} "
            f"{self.current_participants}/{self.max_participants} "
            f"waitlist={self.waitlist_count}>"
        )

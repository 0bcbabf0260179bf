"""
models/participation.py — Participation table definition (ParticipationAggregate).

One row per (ride, user). The row is never deleted: leaving or being removed
moves it to a terminal status, which is why a user cannot join the same ride
twice even after withdrawing.

Lifecycle:

    Confirmed ◀──promote── Waitlisted
        │                      │
        ├──withdraw / remove───┤
        ▼                      ▼
    Withdrawn / Removed   (terminal)

Invariants:
  - waitlist_position is set if and only if status is Waitlisted
    (ck_participations_waitlist_position).
  - Among the Waitlisted rows of one ride, positions are 1..N with no gaps.
    This is maintained by services/participation_service.py, not by a DB
    constraint: a dense renumbering touches several rows in one flush.
  - Role changes follow ROLE_TRANSITIONS. Captain may only step down to
    Leader; Captain → Participant is rejected.
  - Attendance and evidence are recorded only for Confirmed participations
    and never change the participation status.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.errors import AppError, ErrorCode
from backend.app.extensions import db
from backend.app.models.enums import enum_values


# ── Enum Definitions ───────────────────────────────────────────────────────

class ParticipationRole(str, enum.Enum):
    PARTICIPANT = "participant"
    LEADER      = "leader"
    CAPTAIN     = "captain"


class ParticipationStatus(str, enum.Enum):
    CONFIRMED  = "confirmed"
    WAITLISTED = "waitlisted"
    WITHDRAWN  = "withdrawn"
    REMOVED    = "removed"


class AttendanceStatus(str, enum.Enum):
    UNKNOWN  = "unknown"
    ATTENDED = "attended"
    NO_SHOW  = "no_show"


class EvidenceType(str, enum.Enum):
    STRAVA = "strava"
    MANUAL = "manual"


class MatchType(str, enum.Enum):
    TAG         = "tag"
    TIME_WINDOW = "time_window"
    MANUAL      = "manual"


ROLE_TRANSITIONS: MappingProxyType = MappingProxyType({
    ParticipationRole.PARTICIPANT: frozenset({ParticipationRole.LEADER, ParticipationRole.CAPTAIN}),
    ParticipationRole.LEADER:      frozenset({ParticipationRole.PARTICIPANT, ParticipationRole.CAPTAIN}),
    ParticipationRole.CAPTAIN:     frozenset({ParticipationRole.LEADER}),
})

# Display order used when listing a ride's participants.
ROLE_ORDER: MappingProxyType = MappingProxyType({
    ParticipationRole.CAPTAIN:     0,
    ParticipationRole.LEADER:      1,
    ParticipationRole.PARTICIPANT: 2,
})

STATUS_ORDER: MappingProxyType = MappingProxyType({
    ParticipationStatus.CONFIRMED:  0,
    ParticipationStatus.WAITLISTED: 1,
    ParticipationStatus.WITHDRAWN:  2,
    ParticipationStatus.REMOVED:    3,
})


@dataclass(frozen=True)
class Evidence:
    """Proof of attendance linked to a participation."""
    type: EvidenceType
    reference: str
    match_type: MatchType
    linked_at: datetime
    metrics: dict | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=16,
        values_callable=enum_values,
    )


# ── Model ──────────────────────────────────────────────────────────────────

class Participation(db.Model):
    __tablename__ = "participations"

    __table_args__ = (
        # No duplicate participation, whatever the status.
        UniqueConstraint("ride_id", "user_id", name="uq_participations_ride_user"),

        CheckConstraint(
            "(status = 'waitlisted' AND waitlist_position IS NOT NULL) "
            "OR (status <> 'waitlisted' AND waitlist_position IS NULL)",
            name="ck_participations_waitlist_position",
        ),
        CheckConstraint(
            "waitlist_position IS NULL OR waitlist_position >= 1",
            name="ck_participations_waitlist_position_positive",
        ),

        Index("idx_participations_ride_status", "ride_id", "status"),
        Index("idx_participations_user_joined", "user_id", "joined_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    ride_id: Mapped[int] = mapped_column(
        ForeignKey("rides.id", ondelete="RESTRICT"),
        nullable=False,
    )

    club_id: Mapped[int] = mapped_column(
        ForeignKey("clubs.id", ondelete="RESTRICT"),
        nullable=False,
    )

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    role: Mapped[ParticipationRole] = mapped_column(
        _enum_column(ParticipationRole, "participation_role_enum"),
        nullable=False,
        default=ParticipationRole.PARTICIPANT,
    )

    status: Mapped[ParticipationStatus] = mapped_column(
        _enum_column(ParticipationStatus, "participation_status_enum"),
        nullable=False,
    )

    waitlist_position: Mapped[int | None] = mapped_column(Integer, nullable=True)

    message: Mapped[str | None] = mapped_column(String(500), nullable=True)

    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    # ── Attendance & evidence ──────────────────────────────────────────────

    attendance_status: Mapped[AttendanceStatus | None] = mapped_column(
        _enum_column(AttendanceStatus, "attendance_status_enum"),
        nullable=True,
    )

    evidence_type: Mapped[EvidenceType | None] = mapped_column(
        _enum_column(EvidenceType, "evidence_type_enum"),
        nullable=True,
    )
    # Strava activity id or manual evidence id.
    evidence_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    evidence_match_type: Mapped[MatchType | None] = mapped_column(
        _enum_column(MatchType, "evidence_match_type_enum"),
        nullable=True,
    )
    evidence_linked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # distance_m, elevation_gain_m, moving_time_s
    evidence_metrics: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    confirmed_by: Mapped[str | None]      = mapped_column(String(64), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # ── Relationships ──────────────────────────────────────────────────────

    ride: Mapped["Ride"] = relationship("Ride")  # noqa: F821

    # ── Construction ───────────────────────────────────────────────────────

    @classmethod
    def confirmed(
            cls,
            *,
            ride_id: int | None,
            club_id: int,
            user_id: str,
            role: ParticipationRole = ParticipationRole.PARTICIPANT,
            message: str | None = None,
    ) -> "Participation":
        now = _utcnow()
        return cls(
            ride_id=ride_id,
            club_id=club_id,
            user_id=user_id,
            role=role,
            status=ParticipationStatus.CONFIRMED,
            waitlist_position=None,
            message=message,
            joined_at=now,
            updated_at=now,
        )

    @classmethod
    def waitlisted(
            cls,
            *,
            ride_id: int | None,
            club_id: int,
            user_id: str,
            position: int,
            message: str | None = None,
    ) -> "Participation":
        if position < 1:
            raise ValueError("waitlist position must be >= 1")
        now = _utcnow()
        return cls(
            ride_id=ride_id,
            club_id=club_id,
            user_id=user_id,
            role=ParticipationRole.PARTICIPANT,
            status=ParticipationStatus.WAITLISTED,
            waitlist_position=position,
            message=message,
            joined_at=now,
            updated_at=now,
        )

    # ── Queries ────────────────────────────────────────────────────────────

    def can_leave(self) -> bool:
        return self.status in (ParticipationStatus.CONFIRMED, ParticipationStatus.WAITLISTED)

    def can_update_attendance(self) -> bool:
        return self.status == ParticipationStatus.CONFIRMED

    def can_transition_to(self, new_role: ParticipationRole) -> bool:
        return new_role in ROLE_TRANSITIONS.get(self.role, frozenset())

    @property
    def is_captain(self) -> bool:
        return self.role == ParticipationRole.CAPTAIN

    @property
    def evidence(self) -> Evidence | None:
        if self.evidence_type is None:
            return None
        return Evidence(
            type=self.evidence_type,
            reference=self.evidence_reference,
            match_type=self.evidence_match_type,
            linked_at=self.evidence_linked_at,
            metrics=self.evidence_metrics,
        )

    # ── Status mutators ────────────────────────────────────────────────────

    def withdraw(self) -> None:
        if not self.can_leave():
            raise self._invalid_status("withdraw from the ride")
        self.status = ParticipationStatus.WITHDRAWN
        self.waitlist_position = None
        self.updated_at = _utcnow()

    def remove(self) -> None:
        self.status = ParticipationStatus.REMOVED
        self.waitlist_position = None
        self.updated_at = _utcnow()

    def promote_from_waitlist(self) -> None:
        if self.status != ParticipationStatus.WAITLISTED:
            raise self._invalid_status("be promoted from the waitlist")
        self.status = ParticipationStatus.CONFIRMED
        self.waitlist_position = None
        self.updated_at = _utcnow()

    def update_waitlist_position(self, position: int) -> None:
        if self.status != ParticipationStatus.WAITLISTED:
            raise self._invalid_status("change waitlist position")
        if position < 1:
            raise ValueError("waitlist position must be >= 1")
        if self.waitlist_position != position:
            self.waitlist_position = position
            self.updated_at = _utcnow()

    def update_role(self, new_role: ParticipationRole) -> None:
        """
        Raises:
          AppError(INVALID_PARTICIPATION_STATUS, 422) — participation is not Confirmed
          AppError(INVALID_ROLE_TRANSITION, 422)      — not allowed by ROLE_TRANSITIONS
        """
        if self.status != ParticipationStatus.CONFIRMED:
            raise self._invalid_status("change role")
        if not self.can_transition_to(new_role):
            raise AppError(
                ErrorCode.INVALID_ROLE_TRANSITION,
                f"Cannot change role from {self.role.value} to {ParticipationRole(new_role).value}.",
                422,
                field="role",
            )
        self.role = new_role
        self.updated_at = _utcnow()

    # ── Attendance & evidence mutators ─────────────────────────────────────

    def update_attendance(self, status: AttendanceStatus, confirmed_by: str) -> None:
        self._require_attendance_allowed()
        now = _utcnow()
        self.attendance_status = status
        self.confirmed_by = confirmed_by
        self.confirmed_at = now
        self.updated_at = now

    def link_strava_evidence(
            self,
            activity_id: str,
            match_type: MatchType,
            linked_by: str,
            metrics: dict | None = None,
    ) -> None:
        self._link_evidence(EvidenceType.STRAVA, activity_id, match_type, linked_by, metrics)

    def link_manual_evidence(self, evidence_id: str, confirmed_by: str) -> None:
        self._link_evidence(EvidenceType.MANUAL, evidence_id, MatchType.MANUAL, confirmed_by, None)

    # ── Private helpers ────────────────────────────────────────────────────

    def _link_evidence(
            self,
            evidence_type: EvidenceType,
            reference: str,
            match_type: MatchType,
            linked_by: str,
            metrics: dict | None,
    ) -> None:
        self._require_attendance_allowed()
        now = _utcnow()
        self.evidence_type = evidence_type
        self.evidence_reference = reference
        self.evidence_match_type = match_type
        self.evidence_linked_at = now
        self.evidence_metrics = dict(metrics) if metrics else None
        self.attendance_status = AttendanceStatus.ATTENDED
        self.confirmed_by = linked_by
        self.confirmed_at = now
        self.updated_at = now

    def _require_attendance_allowed(self) -> None:
        if not self.can_update_attendance():
            raise self._invalid_status("record attendance")

    def _invalid_status(self, action: str) -> AppError:
        status = self.status.value if self.status else None
        return AppError(
            ErrorCode.INVALID_PARTICIPATION_STATUS,
            f"A {status} participation cannot {action}.",
            422,
        )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Participation id={self.id} ride_id={self.ride_id} "
            f"user_id={self.user_id!r} role={self.role} "
            f"status={self.status} position={self.waitlist_position}>"
        )

"""
models/club_membership.py — Club membership table definition.

A membership is a user's club-scoped role-and-status record. It is written by
the membership subsystem; the ride engine only reads it (see
services/membership_service.py) to resolve ride capabilities.

FK policy: club_id ON DELETE RESTRICT. user_id is the identity provider's
subject string, so it carries no FK.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.extensions import db
from backend.app.models.enums import enum_values


class ClubRole(str, enum.Enum):
    MEMBER  = "member"
    CAPTAIN = "captain"
    ADMIN   = "admin"
    OWNER   = "owner"


class MembershipStatus(str, enum.Enum):
    ACTIVE    = "active"
    PENDING   = "pending"
    SUSPENDED = "suspended"
    REMOVED   = "removed"


class ClubMembership(db.Model):
    __tablename__ = "club_memberships"

    __table_args__ = (
        # A user holds at most one membership record per club.
        UniqueConstraint("club_id", "user_id", name="uq_club_memberships_club_user"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    club_id: Mapped[int] = mapped_column(
        ForeignKey("clubs.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    user_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )

    role: Mapped[ClubRole] = mapped_column(
        Enum(
            ClubRole,
            name="club_role_enum",
            native_enum=False,
            length=16,
            values_callable=enum_values,
        ),
        nullable=False,
        default=ClubRole.MEMBER,
    )

    status: Mapped[MembershipStatus] = mapped_column(
        Enum(
            MembershipStatus,
            name="membership_status_enum",
            native_enum=False,
            length=16,
            values_callable=enum_values,
        ),
        nullable=False,
        default=MembershipStatus.ACTIVE,
    )

    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    club: Mapped["Club"] = relationship(  # noqa: F821
        "Club",
        back_populates="memberships",
    )

    @property
    def is_active(self) -> bool:
        return self.status == MembershipStatus.ACTIVE

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<ClubMembership id={self.id} "
            f"club_id={self.club_id} "
            f"user_id={self.user_id!r} "
            f"role={self.role}>"
        )

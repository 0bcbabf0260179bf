"""Ride engine schema — clubs, memberships, rides, participations.

Revision: 001_ride_engine_schema
Created:  2026-10-19

Append-only:
  This file must NEVER be edited after it has been applied to any database.
  If a schema change is required, create a NEW migration file.

Creation order:
  1. Tables in FK dependency order (clubs → club_memberships → rides
     → participations)
  2. Indexes

Enum columns are VARCHAR + CHECK rather than PostgreSQL ENUM types. The
models declare them with native_enum=False, so adding a value is a
constraint swap instead of an ALTER TYPE.

ON DELETE policies:
  club_memberships.club_id  → RESTRICT  (cannot delete a club with members)
  rides.club_id             → RESTRICT  (cannot delete a club with rides)
  participations.*          → RESTRICT  (rides are cancelled, never deleted)
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# ── Alembic revision identifiers ──────────────────────────────────────────
revision: str = "001_ride_engine_schema"
down_revision: str | None = None      # first migration
branch_labels: tuple | None = None
depends_on: tuple | None = None


def _one_of(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


def upgrade() -> None:
    # ── Step 1: clubs ──────────────────────────────────────────────────────

    op.create_table(
        "clubs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_clubs"),
        sa.CheckConstraint(
            "LENGTH(TRIM(name)) > 0",
            name="ck_clubs_name_nonempty",
        ),
    )

    # ── Step 2: club_memberships ───────────────────────────────────────────
    # user_id is the identity provider's subject, not a local FK.

    op.create_table(
        "club_memberships",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "club_id",
            sa.Integer(),
            sa.ForeignKey("clubs.id", ondelete="RESTRICT", name="fk_club_memberships_club"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("role", sa.String(16), nullable=False, server_default="member"),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column(
            "joined_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_club_memberships"),
        sa.UniqueConstraint("club_id", "user_id", name="uq_club_memberships_club_user"),
        sa.CheckConstraint(
            _one_of("role", ("member", "captain", "admin", "owner")),
            name="ck_club_memberships_role",
        ),
        sa.CheckConstraint(
            _one_of("status", ("active", "pending", "suspended", "removed")),
            name="ck_club_memberships_status",
        ),
    )

    # ── Step 3: rides ──────────────────────────────────────────────────────
    # version is the optimistic-lock column; every UPDATE compares it.

    op.create_table(
        "rides",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "club_id",
            sa.Integer(),
            sa.ForeignKey("clubs.id", ondelete="RESTRICT", name="fk_rides_club"),
            nullable=False,
        ),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("ride_type", sa.String(24), nullable=False, server_default="social"),
        sa.Column("difficulty", sa.String(24), nullable=False, server_default="intermediate"),
        sa.Column("status", sa.String(24), nullable=False, server_default="draft"),
        sa.Column("scope", sa.String(24), nullable=False, server_default="club"),
        sa.Column("audience", sa.String(24), nullable=False, server_default="invite_only"),
        sa.Column("start_date_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("estimated_duration", sa.Integer(), nullable=False),
        sa.Column("max_participants", sa.Integer(), nullable=True),
        sa.Column("current_participants", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("waitlist_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("allow_waitlist", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")),
        sa.Column("meeting_point_name", sa.String(200), nullable=True),
        sa.Column("meeting_point_address", sa.String(500), nullable=True),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("published_by", sa.String(64), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_by", sa.String(64), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", sa.String(64), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completion_notes", sa.Text(), nullable=True),
        sa.Column("cancelled_by", sa.String(64), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(500), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id", name="pk_rides"),
        sa.CheckConstraint(
            "current_participants >= 0",
            name="ck_rides_current_participants_nonnegative",
        ),
        sa.CheckConstraint(
            "waitlist_count >= 0",
            name="ck_rides_waitlist_count_nonnegative",
        ),
        sa.CheckConstraint(
            "max_participants IS NULL OR max_participants >= 1",
            name="ck_rides_max_participants_positive",
        ),
        sa.CheckConstraint(
            "max_participants IS NULL OR current_participants <= max_participants",
            name="ck_rides_capacity",
        ),
        sa.CheckConstraint(
            "estimated_duration > 0",
            name="ck_rides_estimated_duration_positive",
        ),
        sa.CheckConstraint(
            "LENGTH(TRIM(title)) > 0",
            name="ck_rides_title_nonempty",
        ),
        sa.CheckConstraint(
            _one_of("status", ("draft", "published", "active", "completed", "cancelled")),
            name="ck_rides_status",
        ),
        sa.CheckConstraint(
            _one_of("audience", ("invite_only", "members_only", "public_read_only")),
            name="ck_rides_audience",
        ),
    )

    # ── Step 4: participations ─────────────────────────────────────────────
    # UNIQUE(ride_id, user_id): one row per rider per ride, whatever the status.
    # waitlist_position is set exactly when status = 'waitlisted'.

    op.create_table(
        "participations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "ride_id",
            sa.Integer(),
            sa.ForeignKey("rides.id", ondelete="RESTRICT", name="fk_participations_ride"),
            nullable=False,
        ),
        sa.Column(
            "club_id",
            sa.Integer(),
            sa.ForeignKey("clubs.id", ondelete="RESTRICT", name="fk_participations_club"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("role", sa.String(24), nullable=False, server_default="participant"),
        sa.Column("status", sa.String(24), nullable=False),
        sa.Column("waitlist_position", sa.Integer(), nullable=True),
        sa.Column("message", sa.String(500), nullable=True),
        sa.Column(
            "joined_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column("attendance_status", sa.String(24), nullable=True),
        sa.Column("evidence_type", sa.String(24), nullable=True),
        sa.Column("evidence_reference", sa.String(128), nullable=True),
        sa.Column("evidence_match_type", sa.String(24), nullable=True),
        sa.Column("evidence_linked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("evidence_metrics", sa.JSON(), nullable=True),
        sa.Column("confirmed_by", sa.String(64), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_participations"),
        sa.UniqueConstraint("ride_id", "user_id", name="uq_participations_ride_user"),
        sa.CheckConstraint(
            "(status = 'waitlisted' AND waitlist_position IS NOT NULL) "
            "OR (status <> 'waitlisted' AND waitlist_position IS NULL)",
            name="ck_participations_waitlist_position",
        ),
        sa.CheckConstraint(
            "waitlist_position IS NULL OR waitlist_position >= 1",
            name="ck_participations_waitlist_position_positive",
        ),
        sa.CheckConstraint(
            _one_of("role", ("participant", "leader", "captain")),
            name="ck_participations_role",
        ),
        sa.CheckConstraint(
            _one_of("status", ("confirmed", "waitlisted", "withdrawn", "removed")),
            name="ck_participations_status",
        ),
    )

    # ── Step 5: Indexes ────────────────────────────────────────────────────

    op.create_index("ix_club_memberships_club_id", "club_memberships", ["club_id"])
    op.create_index("ix_club_memberships_user_id", "club_memberships", ["user_id"])

    op.create_index("ix_rides_club_id", "rides", ["club_id"])
    op.create_index("ix_rides_status", "rides", ["status"])
    # Club listings are range scans on start time within a club.
    op.create_index("idx_rides_club_start", "rides", ["club_id", "start_date_time"])

    # Roster and waitlist reads filter by ride and status.
    op.create_index("idx_participations_ride_status", "participations", ["ride_id", "status"])
    # "My rides" is newest-first per user.
    op.create_index("idx_participations_user_joined", "participations", ["user_id", "joined_at"])


def downgrade() -> None:
    """Drop all objects created in upgrade(), in reverse dependency order."""

    op.drop_index("idx_participations_user_joined", table_name="participations")
    op.drop_index("idx_participations_ride_status", table_name="participations")
    op.drop_index("idx_rides_club_start",           table_name="rides")
    op.drop_index("ix_rides_status",                table_name="rides")
    op.drop_index("ix_rides_club_id",               table_name="rides")
    op.drop_index("ix_club_memberships_user_id",    table_name="club_memberships")
    op.drop_index("ix_club_memberships_club_id",    table_name="club_memberships")

    op.drop_table("participations")
    op.drop_table("rides")
    op.drop_table("club_memberships")
    op.drop_table("clubs")

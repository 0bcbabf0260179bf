"""
models/club.py — Club table definition.

Clubs are owned by the club subsystem; the ride engine only needs the row to
exist so rides and memberships can reference it. No business logic.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.extensions import db


class Club(db.Model):
    __tablename__ = "clubs"

    __table_args__ = (
        CheckConstraint(
            "LENGTH(TRIM(name)) > 0",
            name="ck_clubs_name_nonempty",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    memberships: Mapped[list["ClubMembership"]] = relationship(  # noqa: F821
        "ClubMembership",
        back_populates="club",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Club id={self.id} name={self.name!r}>"

"""
models/enums.py — Helpers shared by every enum-typed column.

Enum columns are declared with native_enum=False so the same model runs on
PostgreSQL and SQLite; the stored value is always the enum's .value string.
"""

from __future__ import annotations

import enum


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Ensure SQLAlchemy stores enum values (e.g., 'waitlisted'), not names ('WAITLISTED')."""
    return [member.value for member in enum_cls]

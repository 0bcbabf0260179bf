"""
services/persistence_gateway.py — Atomic multi-record storage over a SQLAlchemy Session.

The ride engine never talks to the session directly when it mutates state.
Every state change goes through this gateway so that:

  - A ride and all participations touched by one operation are written in a
    single flush (atomic_multi_write). Either every row lands or none does;
    on failure the whole session is rolled back.
  - Ride rows are versioned (Ride.version is the mapper's version_id_col), so
    each ride UPDATE is a compare-and-swap. A lost race surfaces as
    CONCURRENT_MODIFICATION (409) instead of an over-committed ride.
  - List endpoints page through an index with an opaque keyset cursor
    (query_by_index).

Error mapping:
  StaleDataError / IntegrityError → AppError(CONCURRENT_MODIFICATION, 409)
  any other SQLAlchemyError       → AppError(INTERNAL_ERROR, 500)
  No retries happen here; the caller may re-read and try again.

Layer rules:
  - No Flask imports.
  - Flushes only. Commits are the route's responsibility.
"""

from __future__ import annotations

import base64
import binascii
import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from sqlalchemy import DateTime, and_, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from backend.app.errors import AppError, ErrorCode

logger = logging.getLogger(__name__)


# ── Operation and result types ─────────────────────────────────────────────

@dataclass(frozen=True)
class Put:
    """Insert or update `record`."""
    record: Any


@dataclass(frozen=True)
class Delete:
    """Delete `record`."""
    record: Any


@dataclass(frozen=True)
class KeyRange:
    """Inclusive bounds on one indexed column. Either bound may be None."""
    column: str
    lower: Any = None
    upper: Any = None


@dataclass
class Page:
    items: list = field(default_factory=list)
    next_cursor: str | None = None


# ── Gateway ────────────────────────────────────────────────────────────────

class PersistenceGateway:

    def __init__(self, session: Session) -> None:
        self.session = session

    # ── Reads ──────────────────────────────────────────────────────────────

    def get(self, model, key):
        """Returns the record with primary key `key`, or None."""
        try:
            return self.session.get(model, key)
        except SQLAlchemyError as exc:
            raise self._storage_failure("get", exc)

    def query_by_index(
            self,
            model,
            partition: dict,
            key_range: KeyRange | None = None,
            cursor: str | None = None,
            limit: int | None = None,
            sort_column: str = "id",
            descending: bool = False,
    ) -> Page:
        """
        Returns one page of `model` rows matching `partition`.

        partition:   {column: value}; a list/tuple/set/frozenset value means IN.
        key_range:   optional inclusive bounds on one column.
        cursor:      opaque token from a previous Page.next_cursor.
        limit:       page size; None returns everything in one page.
        sort_column: ordering column; `id` is always the tie-breaker so the
                     order is total and the cursor is stable.
        """
        sort_col = getattr(model, sort_column)
        id_col = model.id

        stmt = select(model).where(*self._partition_criteria(model, partition))
        if key_range is not None:
            stmt = stmt.where(*self._range_criteria(model, key_range))

        if cursor:
            last_value, last_id = self._decode_cursor(cursor, sort_col)
            if descending:
                stmt = stmt.where(or_(
                    sort_col < last_value,
                    and_(sort_col == last_value, id_col < last_id),
                ))
            else:
                stmt = stmt.where(or_(
                    sort_col > last_value,
                    and_(sort_col == last_value, id_col > last_id),
                ))

        if descending:
            stmt = stmt.order_by(sort_col.desc(), id_col.desc())
        else:
            stmt = stmt.order_by(sort_col.asc(), id_col.asc())

        if limit is not None:
            # One extra row tells us whether another page exists.
            stmt = stmt.limit(limit + 1)

        try:
            rows = list(self.session.execute(stmt).scalars().all())
        except SQLAlchemyError as exc:
            raise self._storage_failure("query", exc)

        next_cursor = None
        if limit is not None and len(rows) > limit:
            rows = rows[:limit]
            last = rows[-1]
            next_cursor = self._encode_cursor(getattr(last, sort_column), last.id)

        return Page(items=rows, next_cursor=next_cursor)

    def count_by_index(self, model, partition: dict) -> int:
        stmt = (
            select(func.count())
            .select_from(model)
            .where(*self._partition_criteria(model, partition))
        )
        try:
            return int(self.session.execute(stmt).scalar_one())
        except SQLAlchemyError as exc:
            raise self._storage_failure("count", exc)

    # ── Writes ─────────────────────────────────────────────────────────────

    def put(self, record, expected_version: int | None = None):
        """
        Writes a single record.

        expected_version: when given, the write only proceeds if the record's
        current version matches (conditional put). Versioned models re-check
        the same condition in the UPDATE's WHERE clause.
        """
        if expected_version is not None and getattr(record, "version", None) != expected_version:
            logger.warning(
                "Conditional put rejected for %s: expected version %s, found %s",
                type(record).__name__,
                expected_version,
                getattr(record, "version", None),
            )
            raise AppError(
                ErrorCode.CONCURRENT_MODIFICATION,
                "The record was modified by another request. Reload and try again.",
                409,
            )
        self.atomic_multi_write([Put(record)])
        return record

    def atomic_multi_write(self, operations: Sequence[Put | Delete]) -> None:
        """
        Applies every operation in one flush. All or nothing.

        Each operation must target a distinct record; a batch that names the
        same record twice is a programming error (ValueError).
        """
        self._check_distinct_targets(operations)

        try:
            for op in operations:
                if isinstance(op, Put):
                    self.session.add(op.record)
                elif isinstance(op, Delete):
                    self.session.delete(op.record)
                else:
                    raise ValueError(f"Unsupported operation: {op!r}")
            self.session.flush()
        except (StaleDataError, IntegrityError) as exc:
            self.session.rollback()
            logger.warning(
                "Conditional write lost (%d operations rolled back): %s",
                len(operations),
                exc,
            )
            raise AppError(
                ErrorCode.CONCURRENT_MODIFICATION,
                "The ride was modified by another request. Reload and try again.",
                409,
            )
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise self._storage_failure("write", exc)

    # ── Private helpers ────────────────────────────────────────────────────

    @staticmethod
    def _check_distinct_targets(operations: Iterable[Put | Delete]) -> None:
        seen: set[int] = set()
        for op in operations:
            marker = id(op.record)
            if marker in seen:
                raise ValueError(
                    f"atomic_multi_write received {type(op.record).__name__} more than once"
                )
            seen.add(marker)

    @staticmethod
    def _partition_criteria(model, partition: dict) -> list:
        criteria = []
        for name, value in partition.items():
            column = getattr(model, name)
            if isinstance(value, (list, tuple, set, frozenset)):
                criteria.append(column.in_(list(value)))
            else:
                criteria.append(column == value)
        return criteria

    @staticmethod
    def _range_criteria(model, key_range: KeyRange) -> list:
        column = getattr(model, key_range.column)
        criteria = []
        if key_range.lower is not None:
            criteria.append(column >= key_range.lower)
        if key_range.upper is not None:
            criteria.append(column <= key_range.upper)
        return criteria

    @staticmethod
    def _encode_cursor(sort_value, last_id) -> str:
        if isinstance(sort_value, datetime):
            sort_value = sort_value.isoformat()
        elif isinstance(sort_value, enum.Enum):
            sort_value = sort_value.value
        raw = json.dumps([sort_value, last_id], separators=(",", ":"))
        return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")

    @staticmethod
    def _decode_cursor(cursor: str, sort_col) -> tuple[Any, Any]:
        try:
            padded = cursor + "=" * (-len(cursor) % 4)
            sort_value, last_id = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
            if not isinstance(last_id, int) or isinstance(last_id, bool):
                raise TypeError("cursor id must be an integer")
            if isinstance(sort_value, bool) or not isinstance(sort_value, (str, int, float, type(None))):
                raise TypeError("cursor sort value must be a scalar")
            if isinstance(sort_col.type, DateTime) and sort_value is not None:
                sort_value = datetime.fromisoformat(sort_value)
                if sort_value.tzinfo is None:
                    sort_value = sort_value.replace(tzinfo=timezone.utc)
        except (ValueError, TypeError, UnicodeError, binascii.Error):
            raise AppError(
                ErrorCode.INVALID_FIELD,
                "The pagination cursor is malformed.",
                400,
                field="cursor",
            )
        return sort_value, last_id

    @staticmethod
    def _storage_failure(action: str, exc: SQLAlchemyError) -> AppError:
        logger.error("Storage %s failed", action, exc_info=exc)
        return AppError(
            ErrorCode.INTERNAL_ERROR,
            "A storage error occurred. Please try again later.",
            500,
        )

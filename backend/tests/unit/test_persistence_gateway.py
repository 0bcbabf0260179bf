"""
tests/unit/test_persistence_gateway.py — Error mapping, batch validation and
cursor handling of PersistenceGateway, against a mocked Session.
"""

from __future__ import annotations

import base64
import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from backend.app.errors import AppError, ErrorCode
from backend.app.models.ride import Ride
from backend.app.services.persistence_gateway import Delete, PersistenceGateway, Put


def _gateway():
    session = MagicMock()
    return PersistenceGateway(session), session


class TestAtomicMultiWrite:

    def test_adds_deletes_and_flushes_once(self):
        gateway, session = _gateway()
        a, b = object(), object()

        gateway.atomic_multi_write([Put(a), Delete(b)])

        session.add.assert_called_once_with(a)
        session.delete.assert_called_once_with(b)
        session.flush.assert_called_once()
        session.rollback.assert_not_called()

    def test_duplicate_target_is_rejected_before_any_write(self):
        gateway, session = _gateway()
        record = object()

        with pytest.raises(ValueError):
            gateway.atomic_multi_write([Put(record), Put(record)])

        session.add.assert_not_called()
        session.flush.assert_not_called()

    def test_stale_version_maps_to_409_and_rolls_back(self):
        gateway, session = _gateway()
        session.flush.side_effect = StaleDataError("UPDATE matched 0 rows")

        with pytest.raises(AppError) as exc_info:
            gateway.atomic_multi_write([Put(object())])

        assert exc_info.value.code == ErrorCode.CONCURRENT_MODIFICATION
        assert exc_info.value.http_status == 409
        session.rollback.assert_called_once()

    def test_integrity_error_maps_to_409(self):
        gateway, session = _gateway()
        session.flush.side_effect = IntegrityError("INSERT", {}, Exception("unique"))

        with pytest.raises(AppError) as exc_info:
            gateway.atomic_multi_write([Put(object())])

        assert exc_info.value.code == ErrorCode.CONCURRENT_MODIFICATION
        session.rollback.assert_called_once()

    def test_other_storage_errors_map_to_500(self):
        gateway, session = _gateway()
        session.flush.side_effect = OperationalError("UPDATE", {}, Exception("db down"))

        with pytest.raises(AppError) as exc_info:
            gateway.atomic_multi_write([Put(object())])

        assert exc_info.value.code == ErrorCode.INTERNAL_ERROR
        assert exc_info.value.http_status == 500
        session.rollback.assert_called_once()


class TestPut:

    def test_expected_version_mismatch_raises_without_writing(self):
        gateway, session = _gateway()
        record = SimpleNamespace(version=3)

        with pytest.raises(AppError) as exc_info:
            gateway.put(record, expected_version=2)

        assert exc_info.value.code == ErrorCode.CONCURRENT_MODIFICATION
        session.add.assert_not_called()

    def test_expected_version_match_writes(self):
        gateway, session = _gateway()
        record = SimpleNamespace(version=2)

        assert gateway.put(record, expected_version=2) is record
        session.add.assert_called_once_with(record)
        session.flush.assert_called_once()


class TestGet:

    def test_storage_failure_maps_to_500(self):
        gateway, session = _gateway()
        session.get.side_effect = OperationalError("SELECT", {}, Exception("db down"))

        with pytest.raises(AppError) as exc_info:
            gateway.get(Ride, 1)
        assert exc_info.value.code == ErrorCode.INTERNAL_ERROR


class TestCursor:

    def test_datetime_cursor_round_trips_as_utc(self):
        naive = datetime(2030, 5, 1, 8, 30)
        cursor = PersistenceGateway._encode_cursor(naive, 42)

        value, last_id = PersistenceGateway._decode_cursor(cursor, Ride.start_date_time)
        assert value == naive.replace(tzinfo=timezone.utc)
        assert last_id == 42

    def test_cursor_is_url_safe(self):
        cursor = PersistenceGateway._encode_cursor("a/b+c", 1)
        assert "=" not in cursor
        assert "+" not in cursor
        assert "/" not in cursor

    @pytest.mark.parametrize("bad", ["%%%", "bm90IGpzb24", "WzFd"])
    def test_malformed_cursor_is_400(self, bad):
        with pytest.raises(AppError) as exc_info:
            PersistenceGateway._decode_cursor(bad, Ride.id)
        assert exc_info.value.code == ErrorCode.INVALID_FIELD
        assert exc_info.value.field == "cursor"

    @pytest.mark.parametrize("payload", [
        ["2030-05-01T08:30:00+00:00", {"x": 1}],
        ["2030-05-01T08:30:00+00:00", "abc"],
        ["2030-05-01T08:30:00+00:00", True],
        ["2030-05-01T08:30:00+00:00", None],
        [{"when": "2030-05-01"}, 3],
        [20300501, 3],
    ])
    def test_well_formed_cursor_with_bad_values_is_400(self, payload):
        cursor = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode().rstrip("=")
        with pytest.raises(AppError) as exc_info:
            PersistenceGateway._decode_cursor(cursor, Ride.start_date_time)
        assert exc_info.value.http_status == 400
        assert exc_info.value.field == "cursor"

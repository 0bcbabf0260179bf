"""
tests/unit/test_participation_aggregate.py — Participation status, role,
waitlist position and attendance rules, no database.
"""

from __future__ import annotations

import pytest

from backend.app.errors import AppError, ErrorCode
from backend.app.models.participation import (
    ROLE_TRANSITIONS,
    AttendanceStatus,
    EvidenceType,
    MatchType,
    Participation,
    ParticipationRole,
    ParticipationStatus,
)


def _confirmed(role=ParticipationRole.PARTICIPANT) -> Participation:
    return Participation.confirmed(ride_id=1, club_id=1, user_id="u1", role=role)


def _waitlisted(position=1) -> Participation:
    return Participation.waitlisted(ride_id=1, club_id=1, user_id="u2", position=position)


class TestConstruction:

    def test_confirmed_has_no_position(self):
        p = _confirmed()
        assert p.status == ParticipationStatus.CONFIRMED
        assert p.waitlist_position is None
        assert p.joined_at is not None

    def test_waitlisted_has_position(self):
        p = _waitlisted(position=4)
        assert p.status == ParticipationStatus.WAITLISTED
        assert p.waitlist_position == 4
        assert p.role == ParticipationRole.PARTICIPANT

    def test_waitlisted_rejects_position_zero(self):
        with pytest.raises(ValueError):
            _waitlisted(position=0)


class TestLeaving:

    @pytest.mark.parametrize("factory", [_confirmed, _waitlisted])
    def test_withdraw_clears_position(self, factory):
        p = factory()
        p.withdraw()
        assert p.status == ParticipationStatus.WITHDRAWN
        assert p.waitlist_position is None

    def test_withdraw_twice_raises(self):
        p = _confirmed()
        p.withdraw()
        with pytest.raises(AppError) as exc_info:
            p.withdraw()
        assert exc_info.value.code == ErrorCode.INVALID_PARTICIPATION_STATUS
        assert exc_info.value.http_status == 422

    def test_remove_is_unconditional(self):
        p = _waitlisted()
        p.remove()
        assert p.status == ParticipationStatus.REMOVED
        assert p.waitlist_position is None


class TestWaitlist:

    def test_promote(self):
        p = _waitlisted(position=1)
        p.promote_from_waitlist()
        assert p.status == ParticipationStatus.CONFIRMED
        assert p.waitlist_position is None

    def test_promote_confirmed_raises(self):
        with pytest.raises(AppError):
            _confirmed().promote_from_waitlist()

    def test_update_position(self):
        p = _waitlisted(position=3)
        p.update_waitlist_position(2)
        assert p.waitlist_position == 2

    def test_update_position_of_confirmed_raises(self):
        with pytest.raises(AppError):
            _confirmed().update_waitlist_position(1)

    def test_update_position_below_one_raises(self):
        with pytest.raises(ValueError):
            _waitlisted().update_waitlist_position(0)


class TestRoles:

    def test_captain_to_participant_is_rejected(self):
        p = _confirmed(role=ParticipationRole.CAPTAIN)
        with pytest.raises(AppError) as exc_info:
            p.update_role(ParticipationRole.PARTICIPANT)
        assert exc_info.value.code == ErrorCode.INVALID_ROLE_TRANSITION
        assert exc_info.value.field == "role"
        assert p.role == ParticipationRole.CAPTAIN

    def test_captain_to_leader_succeeds(self):
        p = _confirmed(role=ParticipationRole.CAPTAIN)
        p.update_role(ParticipationRole.LEADER)
        assert p.role == ParticipationRole.LEADER

    @pytest.mark.parametrize("start, target", [
        (ParticipationRole.PARTICIPANT, ParticipationRole.LEADER),
        (ParticipationRole.PARTICIPANT, ParticipationRole.CAPTAIN),
        (ParticipationRole.LEADER, ParticipationRole.PARTICIPANT),
        (ParticipationRole.LEADER, ParticipationRole.CAPTAIN),
    ])
    def test_allowed_transitions(self, start, target):
        p = _confirmed(role=start)
        p.update_role(target)
        assert p.role == target

    def test_same_role_is_not_a_transition(self):
        for role in ParticipationRole:
            assert role not in ROLE_TRANSITIONS[role]

    def test_waitlisted_cannot_change_role(self):
        with pytest.raises(AppError) as exc_info:
            _waitlisted().update_role(ParticipationRole.LEADER)
        assert exc_info.value.code == ErrorCode.INVALID_PARTICIPATION_STATUS

    def test_is_captain(self):
        assert _confirmed(role=ParticipationRole.CAPTAIN).is_captain
        assert not _confirmed().is_captain


class TestAttendance:

    def test_update_attendance(self):
        p = _confirmed()
        p.update_attendance(AttendanceStatus.NO_SHOW, confirmed_by="captain")
        assert p.attendance_status == AttendanceStatus.NO_SHOW
        assert p.confirmed_by == "captain"
        assert p.confirmed_at is not None
        assert p.status == ParticipationStatus.CONFIRMED

    def test_waitlisted_attendance_raises(self):
        with pytest.raises(AppError):
            _waitlisted().update_attendance(AttendanceStatus.ATTENDED, confirmed_by="captain")

    def test_strava_evidence_marks_attended(self):
        p = _confirmed()
        p.link_strava_evidence(
            "activity-1",
            MatchType.TAG,
            linked_by="u1",
            metrics={"distance_m": 1000.0},
        )
        evidence = p.evidence
        assert evidence.type == EvidenceType.STRAVA
        assert evidence.reference == "activity-1"
        assert evidence.match_type == MatchType.TAG
        assert evidence.metrics == {"distance_m": 1000.0}
        assert p.attendance_status == AttendanceStatus.ATTENDED

    def test_manual_evidence(self):
        p = _confirmed()
        p.link_manual_evidence("sheet-7", confirmed_by="captain")
        assert p.evidence.type == EvidenceType.MANUAL
        assert p.evidence.match_type == MatchType.MANUAL
        assert p.evidence.metrics is None
        assert p.confirmed_by == "captain"

    def test_no_evidence_by_default(self):
        assert _confirmed().evidence is None

    def test_withdrawn_cannot_link_evidence(self):
        p = _confirmed()
        p.withdraw()
        with pytest.raises(AppError):
            p.link_manual_evidence("x", confirmed_by="captain")

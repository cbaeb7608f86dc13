from datetime import date, datetime, time, timedelta, timezone

import pytest

from attendance_engine.attendance_service import AttendanceStateMachine, CutoffStatusPolicy
from attendance_engine.exceptions import (
    AlreadyCheckedIn,
    AlreadyCheckedOut,
    IdentityNotFound,
    InvalidTransition,
    NoCheckInFound,
    StorageConflict,
)
from attendance_engine.types import AttendanceState, AttendanceStatus, EventType


TODAY = date(2026, 10, 19)


class RacingDatabase:
    """Hides an existing row from the first lookup, as if a peer inserted it just after."""

    def __init__(self, inner, hidden_reads=1):
        self.inner = inner
        self.hidden_reads = hidden_reads

    def find_attendance(self, identity_id, day):
        if self.hidden_reads:
            self.hidden_reads -= 1
            return None
        return self.inner.find_attendance(identity_id, day)

    def __getattr__(self, name):
        return getattr(self.inner, name)


def test_first_check_in_creates_present_record(attendance, enrolled, clock):
    record = attendance.record_event("alice", TODAY, EventType.CHECK_IN, confidence=0.91)

    assert record.id is not None
    assert record.attendance_date == TODAY
    assert record.check_in_time == clock.current
    assert record.check_out_time is None
    assert record.status is AttendanceStatus.PRESENT
    assert record.confidence_score == pytest.approx(0.91)
    assert attendance.state_of("alice", TODAY) is AttendanceState.CHECKED_IN


def test_second_check_in_is_rejected_and_leaves_record_untouched(attendance, db, enrolled, clock):
    attendance.record_event("alice", TODAY, EventType.CHECK_IN, confidence=0.9)
    before = db.find_attendance("alice", TODAY)

    clock.advance(minutes=5)
    with pytest.raises(AlreadyCheckedIn):
        attendance.record_event("alice", TODAY, EventType.CHECK_IN, confidence=0.5)

    after = db.find_attendance("alice", TODAY)
    assert after.check_in_time == before.check_in_time
    assert after.confidence_score == before.confidence_score
    assert len(db.records_for_date(TODAY)) == 1


def test_check_in_then_check_out(attendance, enrolled, clock):
    checked_in = attendance.check_in("alice", confidence=0.8)
    clock.advance(hours=8, minutes=15)

    checked_out = attendance.check_out("alice")

    assert checked_out.check_out_time == clock.current
    assert checked_out.check_out_time >= checked_in.check_in_time
    assert checked_out.confidence_score == pytest.approx(0.8)
    assert attendance.state_of("alice") is AttendanceState.CHECKED_OUT


def test_check_out_overwrites_confidence_and_notes_when_given(attendance, enrolled, clock):
    attendance.check_in("alice", confidence=0.8, notes="gate 1")
    clock.advance(hours=1)

    record = attendance.check_out("alice", confidence=0.95, notes="gate 2")

    assert record.confidence_score == pytest.approx(0.95)
    assert record.notes == "gate 2"


def test_checked_out_day_rejects_further_events(attendance, enrolled, clock):
    attendance.check_in("alice")
    clock.advance(hours=1)
    attendance.check_out("alice")

    with pytest.raises(AlreadyCheckedOut):
        attendance.check_out("alice")
    with pytest.raises(AlreadyCheckedOut):
        attendance.check_in("alice")


def test_check_out_without_check_in(attendance, db, enrolled):
    with pytest.raises(NoCheckInFound) as excinfo:
        attendance.check_out("alice")

    assert "No check-in record found for today" in str(excinfo.value)
    assert db.find_attendance("alice", TODAY) is None


def test_rejections_share_a_common_base(attendance, enrolled):
    with pytest.raises(InvalidTransition):
        attendance.check_out("bob")


def test_check_out_before_check_in_time_is_rejected(attendance, db, enrolled, clock):
    attendance.check_in("alice")
    clock.advance(minutes=-10)

    with pytest.raises(InvalidTransition):
        attendance.check_out("alice")

    assert db.find_attendance("alice", TODAY).check_out_time is None


def test_check_in_for_unknown_identity(attendance, enrolled):
    with pytest.raises(IdentityNotFound):
        attendance.check_in("mallory")


def test_new_local_day_starts_fresh(attendance, enrolled, clock):
    attendance.check_in("alice")
    clock.advance(days=1)

    record = attendance.check_in("alice")

    assert record.attendance_date == TODAY + timedelta(days=1)
    assert attendance.state_of("alice", TODAY) is AttendanceState.CHECKED_IN


def test_local_day_follows_configured_zone(db, enrolled):
    late_evening_utc = datetime(2026, 10, 19, 23, 30, tzinfo=timezone.utc)
    machine = AttendanceStateMachine(db, tz=timezone(timedelta(hours=2)), clock=lambda: late_evening_utc)

    record = machine.check_in("alice")

    assert record.attendance_date == date(2026, 10, 20)


@pytest.mark.parametrize(
    "hour, minute, expected",
    [
        (8, 30, AttendanceStatus.PRESENT),
        (9, 0, AttendanceStatus.PRESENT),
        (9, 15, AttendanceStatus.LATE),
    ],
)
def test_late_cutoff_policy(db, enrolled, hour, minute, expected):
    when = datetime(2026, 10, 19, hour, minute, tzinfo=timezone.utc)
    machine = AttendanceStateMachine(
        db,
        tz=timezone.utc,
        clock=lambda: when,
        status_policy=CutoffStatusPolicy(time(9, 0)),
    )

    assert machine.check_in("alice").status is expected


def test_no_cutoff_means_always_present(db, enrolled):
    midnight_shift = datetime(2026, 10, 19, 23, 59, tzinfo=timezone.utc)
    machine = AttendanceStateMachine(db, tz=timezone.utc, clock=lambda: midnight_shift)

    assert machine.check_in("alice").status is AttendanceStatus.PRESENT


def test_lost_insert_race_is_reported_as_already_checked_in(db, enrolled, clock):
    AttendanceStateMachine(db, tz=timezone.utc, clock=clock).check_in("alice")
    racing = AttendanceStateMachine(RacingDatabase(db), tz=timezone.utc, clock=clock)

    with pytest.raises(AlreadyCheckedIn):
        racing.check_in("alice")

    assert len(db.records_for_date(TODAY)) == 1


def test_conflict_without_visible_row_propagates(db, enrolled, clock):
    class AlwaysConflicting(RacingDatabase):
        def insert_check_in(self, record):
            raise StorageConflict("simulated unique violation")

    machine = AttendanceStateMachine(AlwaysConflicting(db, hidden_reads=2), tz=timezone.utc, clock=clock)

    with pytest.raises(StorageConflict):
        machine.check_in("alice")


def test_event_type_accepts_wire_strings(attendance, enrolled):
    record = attendance.record_event("alice", None, "check-in")
    assert record.state is AttendanceState.CHECKED_IN

from __future__ import annotations

from datetime import date, datetime, time, timezone, tzinfo
from typing import Callable, Optional, Protocol

from .database import AttendanceDatabase
from .exceptions import (
    AlreadyCheckedIn,
    AlreadyCheckedOut,
    InvalidTransition,
    NoCheckInFound,
    StorageConflict,
)
from .logger import setup_logger
from .types import AttendanceRecord, AttendanceState, AttendanceStatus, EventType


class StatusPolicy(Protocol):
    def __call__(self, check_in_time: datetime) -> AttendanceStatus:
        ...


class CutoffStatusPolicy:
    """Marks a check-in as late when it happens after ``cutoff`` local time."""

    def __init__(self, cutoff: Optional[time] = None):
        self.cutoff = cutoff

    def __call__(self, check_in_time: datetime) -> AttendanceStatus:
        if self.cutoff is not None and check_in_time.time() > self.cutoff:
            return AttendanceStatus.LATE
        return AttendanceStatus.PRESENT


class AttendanceStateMachine:
    """Moves an identity's day through NONE -> CHECKED_IN -> CHECKED_OUT.

    Absence and half days are never produced here; they are assigned by
    reconciliation against the roster after the fact.
    """

    def __init__(
        self,
        db: AttendanceDatabase,
        tz: Optional[tzinfo] = None,
        clock: Optional[Callable[[], datetime]] = None,
        status_policy: Optional[StatusPolicy] = None,
    ):
        self.db = db
        self.tz = tz or timezone.utc
        self.clock = clock or (lambda: datetime.now(self.tz))
        self.status_policy = status_policy or CutoffStatusPolicy()
        self.logger = setup_logger(self.__class__.__name__)

    def now(self) -> datetime:
        return self._as_local(self.clock())

    def local_day(self, when: Optional[datetime] = None) -> date:
        return self._as_local(when or self.clock()).date()

    def state_of(self, identity_id: str, day: Optional[date] = None) -> AttendanceState:
        record = self.db.find_attendance(identity_id, day or self.local_day())
        return record.state if record is not None else AttendanceState.NONE

    def check_in(self, identity_id: str, confidence: Optional[float] = None, notes: Optional[str] = None) -> AttendanceRecord:
        return self.record_event(identity_id, None, EventType.CHECK_IN, confidence, notes)

    def check_out(self, identity_id: str, confidence: Optional[float] = None, notes: Optional[str] = None) -> AttendanceRecord:
        return self.record_event(identity_id, None, EventType.CHECK_OUT, confidence, notes)

    def record_event(
        self,
        identity_id: str,
        day: Optional[date],
        event_type: EventType,
        confidence: Optional[float] = None,
        notes: Optional[str] = None,
    ) -> AttendanceRecord:
        event_type = EventType(event_type)
        day = day or self.local_day()
        if event_type is EventType.CHECK_IN:
            return self._check_in(identity_id, day, confidence, notes)
        return self._check_out(identity_id, day, confidence, notes)

    def _check_in(
        self,
        identity_id: str,
        day: date,
        confidence: Optional[float],
        notes: Optional[str],
    ) -> AttendanceRecord:
        existing = self.db.find_attendance(identity_id, day)
        if existing is not None:
            raise self._rejection(existing, EventType.CHECK_IN)

        now = self.now()
        record = AttendanceRecord(
            identity_id=identity_id,
            attendance_date=day,
            check_in_time=now,
            status=self.status_policy(now),
            confidence_score=confidence,
            notes=notes,
        )
        try:
            created = self.db.insert_check_in(record)
        except StorageConflict:
            # Someone else may have checked this identity in a moment ago.
            current = self.db.find_attendance(identity_id, day)
            if current is None:
                raise
            self.logger.info("Concurrent check-in for %s on %s resolved by re-read", identity_id, day)
            raise self._rejection(current, EventType.CHECK_IN) from None

        self.logger.info(
            "Checked in %s on %s as %s (confidence=%s)",
            identity_id,
            day.isoformat(),
            created.status.value,
            "n/a" if confidence is None else f"{confidence:.3f}",
        )
        return created

    def _check_out(
        self,
        identity_id: str,
        day: date,
        confidence: Optional[float],
        notes: Optional[str],
    ) -> AttendanceRecord:
        existing = self.db.find_attendance(identity_id, day)
        if existing is None or existing.check_out_time is not None:
            raise self._rejection(existing, EventType.CHECK_OUT)

        now = self.now()
        if existing.check_in_time is not None and now < self._as_local(existing.check_in_time):
            raise InvalidTransition(
                f"Check-out time {now.isoformat()} precedes check-in time "
                f"{existing.check_in_time.isoformat()} for {identity_id}."
            )

        if not self.db.complete_check_out(identity_id, day, now, confidence, notes):
            current = self.db.find_attendance(identity_id, day)
            if current is None or current.check_out_time is not None:
                raise self._rejection(current, EventType.CHECK_OUT)
            raise StorageConflict(f"Check-out for {identity_id} on {day.isoformat()} was not applied.")

        updated = self.db.find_attendance(identity_id, day)
        if updated is None:
            raise NoCheckInFound(f"Attendance record for {identity_id} on {day.isoformat()} disappeared.")
        self.logger.info("Checked out %s on %s", identity_id, day.isoformat())
        return updated

    @staticmethod
    def _rejection(record: Optional[AttendanceRecord], event_type: EventType) -> InvalidTransition:
        state = record.state if record is not None else AttendanceState.NONE
        if state is AttendanceState.CHECKED_OUT:
            return AlreadyCheckedOut(f"{record.identity_id} already checked out on {record.attendance_date}.")
        if state is AttendanceState.CHECKED_IN and event_type is EventType.CHECK_IN:
            return AlreadyCheckedIn(f"{record.identity_id} already checked in on {record.attendance_date}.")
        if state is AttendanceState.NONE and event_type is EventType.CHECK_OUT:
            return NoCheckInFound("No check-in record found for today.")
        return InvalidTransition(f"Cannot apply {event_type.value} in state {state.value}.")

    def _as_local(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=self.tz)
        return value.astimezone(self.tz)

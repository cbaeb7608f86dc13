from __future__ import annotations


class AttendanceError(Exception):
    """Base exception for the attendance engine."""


class DimensionMismatch(AttendanceError):
    """Raised when a descriptor does not have the gallery's dimensionality."""

    def __init__(self, expected: int, actual: int, message: str | None = None):
        super().__init__(message or f"Descriptor dimension mismatch: expected {expected}, got {actual}.")
        self.expected = expected
        self.actual = actual


class IdentityNotFound(AttendanceError):
    """Raised when an operation targets an identity that is not enrolled."""


class InvalidTransition(AttendanceError):
    """Raised when an attendance event is not valid for the day's current state."""


class AlreadyCheckedIn(InvalidTransition):
    """Raised when a second check-in is attempted for the same day."""


class AlreadyCheckedOut(InvalidTransition):
    """Raised when the day's record is already finalized."""


class NoCheckInFound(InvalidTransition):
    """Raised when a check-out is attempted without a check-in for the day."""


class StorageConflict(AttendanceError):
    """Raised when a write loses the race on the (identity, date) key."""


class DatabaseError(AttendanceError):
    """Raised when database operations fail."""

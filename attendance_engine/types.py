from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional, Protocol

import numpy as np


class EventType(str, enum.Enum):
    CHECK_IN = "check-in"
    CHECK_OUT = "check-out"


class AttendanceStatus(str, enum.Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"
    HALF_DAY = "half_day"


class AttendanceState(str, enum.Enum):
    NONE = "none"
    CHECKED_IN = "checked_in"
    CHECKED_OUT = "checked_out"


@dataclass
class Identity:
    identity_id: str
    display_name: str
    descriptors: list[np.ndarray] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True


@dataclass(frozen=True)
class MatchResult:
    """Outcome of one probe lookup.

    ``distance`` is ``inf`` when the gallery is empty. ``confidence`` is
    ``1 - distance`` and only carries meaning for distances in ``[0, 1)``;
    a threshold above 1 can yield a matched result with confidence <= 0.
    """

    identity_id: Optional[str]
    display_name: Optional[str]
    distance: float
    confidence: float
    matched_at: datetime

    @property
    def matched(self) -> bool:
        return self.identity_id is not None


@dataclass
class AttendanceRecord:
    identity_id: str
    attendance_date: date
    check_in_time: Optional[datetime] = None
    check_out_time: Optional[datetime] = None
    status: AttendanceStatus = AttendanceStatus.PRESENT
    confidence_score: Optional[float] = None
    notes: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def state(self) -> AttendanceState:
        if self.check_out_time is not None:
            return AttendanceState.CHECKED_OUT
        if self.check_in_time is not None:
            return AttendanceState.CHECKED_IN
        return AttendanceState.NONE


class DescriptorExtractor(Protocol):
    """Turns a camera frame into a face descriptor, or None when no face is found."""

    def __call__(self, frame: Any) -> Optional[np.ndarray]:
        ...

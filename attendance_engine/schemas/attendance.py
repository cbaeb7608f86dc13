from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field

from attendance_engine.types import AttendanceStatus, EventType


class AttendanceEventRequest(BaseModel):
    identity_id: str = Field(min_length=1, max_length=64)
    type: EventType
    confidence_score: float | None = None
    notes: str | None = Field(default=None, max_length=500)


class AttendanceResponse(BaseModel):
    id: int | None = None
    identity_id: str
    attendance_date: date
    check_in_time: datetime | None = None
    check_out_time: datetime | None = None
    status: AttendanceStatus
    confidence_score: float | None = None
    notes: str | None = None

    class Config:
        from_attributes = True


class AttendanceEntryResponse(BaseModel):
    display_name: str
    metadata: dict[str, Any] = {}
    record: AttendanceResponse

    class Config:
        from_attributes = True


class AbsenteeResponse(BaseModel):
    identity_id: str
    display_name: str
    metadata: dict[str, Any] = {}

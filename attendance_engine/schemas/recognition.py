from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from .attendance import AttendanceResponse


class RecognitionMatchRequest(BaseModel):
    descriptor: list[float] = Field(min_length=1)
    threshold: float | None = Field(default=None, gt=0)
    record_attendance: bool = False


class RecognitionMatchResponse(BaseModel):
    matched: bool
    identity_id: str | None
    display_name: str | None
    distance: float | None
    confidence: float
    matched_at: datetime
    outcome: str | None = None
    message: str | None = None
    attendance: AttendanceResponse | None = None

from __future__ import annotations

from datetime import date
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import Response

from attendance_engine.api.deps import get_engine
from attendance_engine.engine import AttendanceEngine
from attendance_engine.schemas.attendance import (
    AbsenteeResponse,
    AttendanceEntryResponse,
    AttendanceEventRequest,
    AttendanceResponse,
)

router = APIRouter(prefix="/attendance", tags=["attendance"])


@router.get("", response_model=list[AttendanceEntryResponse])
def list_attendance(
    day: Optional[date] = Query(default=None, alias="date"),
    q: str = "",
    limit: int = 2000,
    engine: AttendanceEngine = Depends(get_engine),
):
    target = day or engine.attendance.local_day()
    entries = engine.reports.search(query_text=q, date_from=target, date_to=target, limit=limit)
    return [AttendanceEntryResponse.model_validate(entry) for entry in entries]


@router.post("", response_model=AttendanceResponse, status_code=status.HTTP_201_CREATED)
def record_attendance(payload: AttendanceEventRequest, engine: AttendanceEngine = Depends(get_engine)):
    record = engine.attendance.record_event(
        payload.identity_id,
        None,
        payload.type,
        confidence=payload.confidence_score,
        notes=payload.notes,
    )
    return AttendanceResponse.model_validate(record)


@router.get("/absent", response_model=list[AbsenteeResponse])
def list_absent(
    day: Optional[date] = Query(default=None, alias="date"),
    engine: AttendanceEngine = Depends(get_engine),
):
    target = day or engine.attendance.local_day()
    return [
        AbsenteeResponse(identity_id=item.identity_id, display_name=item.display_name, metadata=item.metadata)
        for item in engine.reports.absentees(target)
    ]


@router.get("/stats")
def attendance_stats(
    day: Optional[date] = Query(default=None, alias="date"),
    engine: AttendanceEngine = Depends(get_engine),
) -> dict:
    target = day or engine.attendance.local_day()
    return {"date": target.isoformat(), **engine.reports.stats(target)}


@router.get("/export")
def export_attendance(
    day: date = Query(alias="date"),
    fmt: Literal["csv", "xlsx"] = Query(default="csv", alias="format"),
    engine: AttendanceEngine = Depends(get_engine),
):
    stamp = day.isoformat()
    if fmt == "xlsx":
        return Response(
            content=engine.reports.attendance_excel(day),
            media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            headers={"Content-Disposition": f'attachment; filename="attendance-{stamp}.xlsx"'},
        )
    return Response(
        content=engine.reports.attendance_csv(day),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="attendance-{stamp}.csv"'},
    )

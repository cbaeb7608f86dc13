from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from attendance_engine.api.deps import get_engine
from attendance_engine.engine import AttendanceEngine

router = APIRouter(tags=["health"])


@router.get("/health")
def health(engine: AttendanceEngine = Depends(get_engine)) -> dict:
    return {
        "ok": True,
        "service": "face-attendance-engine",
        "identities": len(engine.store),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

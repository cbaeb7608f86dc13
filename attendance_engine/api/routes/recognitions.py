from __future__ import annotations

import math

from fastapi import APIRouter, Depends

from attendance_engine.api.deps import get_engine, get_session
from attendance_engine.engine import AttendanceEngine
from attendance_engine.recognition_service import RecognitionSession
from attendance_engine.schemas.attendance import AttendanceResponse
from attendance_engine.schemas.recognition import RecognitionMatchRequest, RecognitionMatchResponse

router = APIRouter(prefix="/recognitions", tags=["recognitions"])


@router.post("/match", response_model=RecognitionMatchResponse)
def match_descriptor(
    payload: RecognitionMatchRequest,
    engine: AttendanceEngine = Depends(get_engine),
    session: RecognitionSession = Depends(get_session),
):
    session.refresh_store_if_due()
    result = engine.matcher.identify(payload.descriptor, payload.threshold)
    response = RecognitionMatchResponse(
        matched=result.matched,
        identity_id=result.identity_id,
        display_name=result.display_name,
        distance=result.distance if math.isfinite(result.distance) else None,
        confidence=result.confidence,
        matched_at=result.matched_at,
    )
    if not payload.record_attendance:
        return response

    event = session.record_match(result)
    response.outcome = event.outcome.value
    response.message = event.message
    if event.record is not None:
        response.attendance = AttendanceResponse.model_validate(event.record)
    return response

from __future__ import annotations

from fastapi import Request

from attendance_engine.engine import AttendanceEngine
from attendance_engine.recognition_service import RecognitionSession


def get_engine(request: Request) -> AttendanceEngine:
    return request.app.state.engine


def get_session(request: Request) -> RecognitionSession:
    return request.app.state.session

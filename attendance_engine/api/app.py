from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from attendance_engine.api.routes import attendance, health, identities, recognitions
from attendance_engine.engine import AttendanceEngine
from attendance_engine.exceptions import (
    AttendanceError,
    DatabaseError,
    DimensionMismatch,
    IdentityNotFound,
    InvalidTransition,
    StorageConflict,
)
from attendance_engine.logger import setup_logger

_STATUS_BY_ERROR: list[tuple[type[AttendanceError], int]] = [
    (DimensionMismatch, 422),
    (IdentityNotFound, status.HTTP_404_NOT_FOUND),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (StorageConflict, status.HTTP_409_CONFLICT),
    (DatabaseError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def _status_for(exc: AttendanceError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


def create_app(engine: Optional[AttendanceEngine] = None) -> FastAPI:
    owns_engine = engine is None
    engine = engine or AttendanceEngine.from_settings()
    settings = engine.settings
    logger = setup_logger("attendance.api")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.session.stop()
        if owns_engine:
            engine.close()

    app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)
    app.state.engine = engine
    app.state.session = engine.new_session()

    @app.exception_handler(AttendanceError)
    async def attendance_error_handler(request: Request, exc: AttendanceError) -> JSONResponse:
        code = _status_for(exc)
        log_level = logging.WARNING if code >= 500 else logging.INFO
        logger.log(log_level, "%s %s -> %d: %s", request.method, request.url.path, code, exc)
        return JSONResponse(status_code=code, content={"error": type(exc).__name__, "detail": str(exc)})

    app.include_router(health.router, prefix=settings.api_prefix)
    app.include_router(identities.router, prefix=settings.api_prefix)
    app.include_router(recognitions.router, prefix=settings.api_prefix)
    app.include_router(attendance.router, prefix=settings.api_prefix)
    return app

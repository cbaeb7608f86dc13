from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .attendance_service import AttendanceStateMachine, CutoffStatusPolicy
from .config import Settings, get_settings
from .database import AttendanceDatabase
from .descriptor_store import DescriptorStore
from .logger import setup_logger
from .matcher import FaceMatcher
from .recognition_service import FrameSource, RecognitionSession
from .registration_service import RegistrationService
from .report_service import ReportService
from .types import DescriptorExtractor


@dataclass
class AttendanceEngine:
    """Explicitly constructed set of collaborators sharing one gallery and database."""

    settings: Settings
    db: AttendanceDatabase
    store: DescriptorStore
    matcher: FaceMatcher
    attendance: AttendanceStateMachine
    registration: RegistrationService
    reports: ReportService

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "AttendanceEngine":
        settings = settings or get_settings()
        logger = setup_logger(cls.__name__)

        db = AttendanceDatabase(settings.database_url, tz=settings.tz)
        store = DescriptorStore(dimension=settings.descriptor_dimension)
        store.refresh(db)
        matcher = FaceMatcher(store, threshold=settings.match_threshold)
        attendance = AttendanceStateMachine(
            db,
            tz=settings.tz,
            clock=clock,
            status_policy=CutoffStatusPolicy(settings.late_cutoff),
        )
        registration = RegistrationService(
            db,
            store,
            matcher=matcher,
            duplicate_threshold=settings.duplicate_enrollment_threshold,
        )
        logger.info("Attendance engine ready with %d enrolled identities", len(store))
        return cls(
            settings=settings,
            db=db,
            store=store,
            matcher=matcher,
            attendance=attendance,
            registration=registration,
            reports=ReportService(db),
        )

    def new_session(
        self,
        frame_source: Optional[FrameSource] = None,
        extractor: Optional[DescriptorExtractor] = None,
    ) -> RecognitionSession:
        return RecognitionSession(
            matcher=self.matcher,
            attendance=self.attendance,
            extractor=extractor,
            frame_source=frame_source,
            interval_seconds=self.settings.probe_interval_seconds,
            max_workers=self.settings.session_workers,
            directory=self.db,
            refresh_seconds=self.settings.store_refresh_seconds,
        )

    def close(self) -> None:
        self.db.dispose()

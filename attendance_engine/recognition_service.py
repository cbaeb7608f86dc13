from __future__ import annotations

import enum
import itertools
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

import numpy as np

from .attendance_service import AttendanceStateMachine
from .descriptor_store import DescriptorStore
from .exceptions import (
    AlreadyCheckedIn,
    AlreadyCheckedOut,
    AttendanceError,
    DatabaseError,
    DimensionMismatch,
    IdentityNotFound,
    InvalidTransition,
    StorageConflict,
)
from .logger import setup_logger
from .matcher import FaceMatcher
from .types import AttendanceRecord, DescriptorExtractor, EventType, MatchResult


class SessionOutcome(str, enum.Enum):
    RECORDED = "recorded"
    ALREADY_RECORDED = "already_recorded"
    NO_MATCH = "no_match"
    NO_FACE = "no_face"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass
class SessionEvent:
    sequence: int
    outcome: SessionOutcome
    message: str
    match: Optional[MatchResult] = None
    record: Optional[AttendanceRecord] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def identity_id(self) -> Optional[str]:
        return self.match.identity_id if self.match is not None else None


SessionListener = Callable[[SessionEvent], None]
FrameSource = Callable[[], Any]


class RecognitionSession:
    """Turns a stream of probe descriptors into at most one check-in per identity per day.

    Probes are matched against the gallery and matched identities are checked
    in. Repeat sightings on the same day are reported as ``already_recorded``
    rather than errors. Writes for one identity are serialized by a
    per-identity lock; the storage unique key settles races between sessions.

    ``start`` runs a periodic capture loop that pulls frames from
    ``frame_source``. A tick is skipped while the previous one is still in
    flight. ``stop`` prevents new writes but lets in-flight ones finish.
    """

    def __init__(
        self,
        matcher: FaceMatcher,
        attendance: AttendanceStateMachine,
        extractor: Optional[DescriptorExtractor] = None,
        frame_source: Optional[FrameSource] = None,
        interval_seconds: float = 1.0,
        max_workers: int = 4,
        threshold: Optional[float] = None,
        directory=None,
        refresh_seconds: float = 60.0,
        history_size: int = 200,
    ):
        self.matcher = matcher
        self.attendance = attendance
        self.extractor = extractor
        self.frame_source = frame_source
        self.interval_seconds = max(0.01, float(interval_seconds))
        self.max_workers = max(1, int(max_workers))
        self.threshold = threshold
        self.directory = directory
        self.refresh_seconds = refresh_seconds
        self.logger = setup_logger(self.__class__.__name__)

        self.recent_events: Deque[SessionEvent] = deque(maxlen=history_size)
        self.skipped_ticks = 0

        self._listeners: List[SessionListener] = []
        self._sequence = itertools.count(1)
        self._current_day: Optional[date] = None
        self._marked_today: set[str] = set()
        self._state_lock = threading.Lock()
        self._identity_locks: Dict[str, threading.Lock] = {}

        self._executor: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._cancelled = False
        self._in_flight: Optional[Future] = None
        self._last_refresh = time.monotonic()

    @property
    def store(self) -> DescriptorStore:
        return self.matcher.store

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def __enter__(self) -> "RecognitionSession":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def start(self) -> None:
        if self.frame_source is None:
            raise AttendanceError("A frame source is required to run a capture session.")
        if self.is_running:
            return

        self._stop_event.clear()
        self._cancelled = False
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="attendance-write")
        self._thread = threading.Thread(target=self._run_loop, name="capture-session", daemon=True)
        self._thread.start()
        self.logger.info("Capture session started (interval %.2fs)", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._cancelled = True
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None
        executor, self._executor = self._executor, None
        if executor is not None:
            # Committed and in-flight writes run to completion.
            executor.shutdown(wait=True)
        self.logger.info("Capture session stopped")

    def tick(self) -> bool:
        """Schedule one capture-and-match cycle; returns False when skipped."""
        if self._executor is None or self.frame_source is None:
            raise AttendanceError("Capture session is not running.")

        in_flight = self._in_flight
        if in_flight is not None and not in_flight.done():
            self.skipped_ticks += 1
            return False

        future = self._executor.submit(self._capture_once)
        future.add_done_callback(self._log_failure)
        self._in_flight = future
        return True

    def submit_probe(self, probe: np.ndarray) -> Future:
        if self._executor is None:
            raise AttendanceError("Capture session is not running.")
        future = self._executor.submit(self.process_probe, probe)
        future.add_done_callback(self._log_failure)
        return future

    def process_frame(self, frame: Any) -> SessionEvent:
        probe = self.extractor(frame) if self.extractor is not None else frame
        if probe is None:
            return self._emit(SessionOutcome.NO_FACE, "No face detected")
        return self.process_probe(probe)

    def process_probe(self, probe: np.ndarray) -> SessionEvent:
        try:
            match = self.matcher.identify(probe, self.threshold)
        except DimensionMismatch as exc:
            self.logger.warning("Discarded malformed probe: %s", exc)
            return self._emit(SessionOutcome.ERROR, str(exc))
        return self.record_match(match)

    def record_match(self, match: MatchResult) -> SessionEvent:
        if not match.matched:
            return self._emit(SessionOutcome.NO_MATCH, "Unknown face", match=match)
        if self._cancelled:
            return self._emit(SessionOutcome.CANCELLED, "Session stopped", match=match)

        identity_id = match.identity_id
        name = match.display_name or identity_id
        with self._identity_lock(identity_id):
            try:
                day = self._rollover_day_if_needed()
                if identity_id in self._marked_today:
                    return self._emit(SessionOutcome.ALREADY_RECORDED, f"Already marked today: {name}", match=match)
                if self._cancelled:
                    return self._emit(SessionOutcome.CANCELLED, "Session stopped", match=match)

                record = self.attendance.record_event(identity_id, day, EventType.CHECK_IN, match.confidence)
            except (AlreadyCheckedIn, AlreadyCheckedOut):
                self._marked_today.add(identity_id)
                return self._emit(SessionOutcome.ALREADY_RECORDED, f"Already marked today: {name}", match=match)
            except (DatabaseError, StorageConflict, IdentityNotFound) as exc:
                self.logger.warning("Attendance write for %s failed, retrying on a later probe: %s", identity_id, exc)
                return self._emit(SessionOutcome.ERROR, str(exc), match=match)

            self._marked_today.add(identity_id)
            self.logger.info("Attendance marked for %s (%s)", name, identity_id)
            return self._emit(SessionOutcome.RECORDED, f"Attendance marked: {name}", match=match, record=record)

    def check_out(
        self,
        identity_id: str,
        confidence: Optional[float] = None,
        notes: Optional[str] = None,
    ) -> SessionEvent:
        """Explicit check-out; recognition alone never checks anyone out."""
        with self._identity_lock(identity_id):
            try:
                record = self.attendance.record_event(identity_id, None, EventType.CHECK_OUT, confidence, notes)
            except InvalidTransition as exc:
                return self._emit(SessionOutcome.REJECTED, str(exc))
            except (DatabaseError, StorageConflict) as exc:
                self.logger.warning("Check-out for %s failed: %s", identity_id, exc)
                return self._emit(SessionOutcome.ERROR, str(exc))
        return self._emit(SessionOutcome.RECORDED, f"Checked out: {identity_id}", record=record)

    def _capture_once(self) -> Optional[SessionEvent]:
        if self._cancelled:
            return None
        frame = self.frame_source()
        if frame is None:
            return self._emit(SessionOutcome.NO_FACE, "No frame available")
        return self.process_frame(frame)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.refresh_store_if_due()
            self.tick()
            self._stop_event.wait(self.interval_seconds)

    def refresh_store_if_due(self) -> bool:
        """Reload the gallery from the directory once per refresh period."""
        if self.directory is None or self.refresh_seconds <= 0:
            return False
        now = time.monotonic()
        if now - self._last_refresh < self.refresh_seconds:
            return False
        self._last_refresh = now
        try:
            self.store.refresh(self.directory)
        except AttendanceError:
            self.logger.exception("Gallery refresh failed; keeping the current gallery")
            return False
        return True

    def _rollover_day_if_needed(self) -> date:
        today = self.attendance.local_day()
        with self._state_lock:
            if today != self._current_day:
                self._marked_today = self.attendance.db.identity_ids_with_records(today)
                self._current_day = today
                self.logger.info("Date changed. Attendance cache refreshed for %s.", today.isoformat())
        return today

    def _identity_lock(self, identity_id: str) -> threading.Lock:
        with self._state_lock:
            lock = self._identity_locks.get(identity_id)
            if lock is None:
                lock = threading.Lock()
                self._identity_locks[identity_id] = lock
            return lock

    def _emit(
        self,
        outcome: SessionOutcome,
        message: str,
        match: Optional[MatchResult] = None,
        record: Optional[AttendanceRecord] = None,
    ) -> SessionEvent:
        event = SessionEvent(
            sequence=next(self._sequence),
            outcome=outcome,
            message=message,
            match=match,
            record=record,
        )
        self.recent_events.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                self.logger.exception("Session listener failed for event %d", event.sequence)
        return event

    def _log_failure(self, future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self.logger.error("Probe processing failed: %s", exc, exc_info=exc)

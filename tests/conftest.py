import os
import tempfile
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

os.environ.setdefault("ATTENDANCE_LOG_DIR", tempfile.mkdtemp(prefix="attendance-logs-"))

from attendance_engine.attendance_service import AttendanceStateMachine  # noqa: E402
from attendance_engine.config import Settings  # noqa: E402
from attendance_engine.database import AttendanceDatabase  # noqa: E402
from attendance_engine.descriptor_store import DescriptorStore  # noqa: E402
from attendance_engine.engine import AttendanceEngine  # noqa: E402
from attendance_engine.matcher import FaceMatcher  # noqa: E402
from attendance_engine.types import Identity  # noqa: E402


DIM = 16


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


def vec(value: float, dim: int = DIM) -> np.ndarray:
    return np.full(dim, value, dtype=np.float32)


def identity(identity_id: str, *descriptors, name: str | None = None, **metadata) -> Identity:
    return Identity(
        identity_id=identity_id,
        display_name=name or identity_id.title(),
        descriptors=[np.asarray(d, dtype=np.float32) for d in descriptors],
        metadata=metadata,
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 19, 8, 30, tzinfo=timezone.utc))


@pytest.fixture
def db(tmp_path):
    database = AttendanceDatabase(f"sqlite:///{tmp_path / 'attendance.db'}", tz=timezone.utc)
    yield database
    database.dispose()


@pytest.fixture
def store():
    return DescriptorStore(dimension=DIM)


@pytest.fixture
def matcher(store):
    return FaceMatcher(store, threshold=0.6)


@pytest.fixture
def attendance(db, clock):
    return AttendanceStateMachine(db, tz=timezone.utc, clock=clock)


@pytest.fixture
def enrolled(db, store):
    """Two identities far apart: alice at the origin, bob at 10."""
    people = [
        identity("alice", vec(0.0), name="Alice", department="Research", external_id="E-100"),
        identity("bob", vec(10.0), name="Bob", department="Ops", external_id="E-200"),
    ]
    for person in people:
        db.save_identity(person)
        store.enroll(person)
    return people


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'engine.db'}",
        log_dir=tmp_path / "logs",
        descriptor_dimension=DIM,
        match_threshold=0.6,
        duplicate_enrollment_threshold=0.3,
        probe_interval_seconds=0.05,
        store_refresh_seconds=0,
    )


@pytest.fixture
def engine(settings, clock):
    built = AttendanceEngine.from_settings(settings, clock=clock)
    yield built
    built.close()

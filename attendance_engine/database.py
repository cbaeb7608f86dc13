from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from typing import Any, Iterator, List, Optional

import numpy as np
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .db.base import Base
from .db.models import AttendanceRow, DescriptorRow, IdentityRow
from .db.session import build_engine, build_session_factory
from .exceptions import DatabaseError, IdentityNotFound, StorageConflict
from .types import AttendanceRecord, AttendanceStatus, Identity


@dataclass
class AttendanceEntry:
    record: AttendanceRecord
    display_name: str
    metadata: dict[str, Any] = field(default_factory=dict)


class AttendanceDatabase:
    """Persistence for identities, their descriptors and daily attendance rows.

    The UNIQUE(identity_id, attendance_date) constraint is what makes check-in
    linearizable across processes: ``insert_check_in`` is a plain INSERT and
    a lost race surfaces as ``StorageConflict``. Check-out is a conditional
    UPDATE that only applies while ``check_out_time`` is still NULL.
    """

    def __init__(self, database_url: str, tz: Optional[tzinfo] = None):
        self.database_url = database_url
        self.tz = tz
        try:
            self.engine = build_engine(database_url)
            self.session_factory = build_session_factory(self.engine)
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as exc:
            raise DatabaseError(f"Failed to initialize database: {exc}") from exc

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _transaction(self, action: str) -> Iterator[Session]:
        try:
            with self.session_factory.begin() as session:
                yield session
        except IntegrityError as exc:
            raise StorageConflict(f"Conflict while trying to {action}: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            raise DatabaseError(f"Failed to {action}: {exc}") from exc

    # Identity directory

    def save_identity(self, identity: Identity) -> None:
        if not identity.descriptors:
            raise DatabaseError(f"Identity {identity.identity_id} has no descriptors.")

        with self._transaction(f"save identity {identity.identity_id}") as session:
            row = self._identity_row(session, identity.identity_id, with_descriptors=True)
            if row is None:
                row = IdentityRow(identity_id=identity.identity_id)
                session.add(row)
            row.display_name = identity.display_name
            row.metadata_json = dict(identity.metadata)
            row.is_active = identity.is_active

            # Flush removals first so positions can be reused.
            row.descriptors.clear()
            session.flush()
            row.descriptors.extend(
                self._descriptor_row(position, vector) for position, vector in enumerate(identity.descriptors)
            )

    def add_descriptor(self, identity_id: str, descriptor: np.ndarray) -> int:
        with self._transaction(f"add descriptor for {identity_id}") as session:
            row = self._identity_row(session, identity_id, with_descriptors=True)
            if row is None:
                raise IdentityNotFound(f"Identity {identity_id} not found.")
            row.descriptors.append(self._descriptor_row(len(row.descriptors), descriptor))
            return len(row.descriptors)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._transaction(f"load identity {identity_id}") as session:
            row = self._identity_row(session, identity_id, with_descriptors=True)
            return self._to_identity(row) if row is not None else None

    def list_identities(self, active_only: bool = True) -> List[Identity]:
        stmt = (
            select(IdentityRow)
            .options(selectinload(IdentityRow.descriptors))
            .order_by(IdentityRow.id.asc())
        )
        if active_only:
            stmt = stmt.where(IdentityRow.is_active.is_(True))

        with self._transaction("load identities") as session:
            return [self._to_identity(row) for row in session.scalars(stmt).all()]

    def set_identity_active(self, identity_id: str, active: bool) -> bool:
        with self._transaction(f"update identity {identity_id}") as session:
            result = session.execute(
                update(IdentityRow).where(IdentityRow.identity_id == identity_id).values(is_active=active)
            )
            return result.rowcount > 0

    def delete_identity(self, identity_id: str) -> bool:
        with self._transaction(f"delete identity {identity_id}") as session:
            row = self._identity_row(session, identity_id)
            if row is None:
                return False
            session.delete(row)
            return True

    # Attendance

    def find_attendance(self, identity_id: str, day: date) -> Optional[AttendanceRecord]:
        with self._transaction(f"load attendance for {identity_id}") as session:
            row = session.scalar(
                select(AttendanceRow).where(
                    AttendanceRow.identity_id == identity_id,
                    AttendanceRow.attendance_date == day,
                )
            )
            return self._to_record(row) if row is not None else None

    def insert_check_in(self, record: AttendanceRecord) -> AttendanceRecord:
        if record.check_in_time is None:
            raise DatabaseError("A check-in record needs a check-in time.")

        with self._transaction(f"check in {record.identity_id}") as session:
            if self._identity_row(session, record.identity_id) is None:
                raise IdentityNotFound(f"Identity {record.identity_id} not found.")
            row = AttendanceRow(
                identity_id=record.identity_id,
                attendance_date=record.attendance_date,
                check_in_time=self._to_storage(record.check_in_time),
                status=record.status.value,
                confidence_score=record.confidence_score,
                notes=record.notes,
            )
            session.add(row)
            session.flush()
            session.refresh(row)
            return self._to_record(row)

    def complete_check_out(
        self,
        identity_id: str,
        day: date,
        check_out_time: datetime,
        confidence_score: Optional[float] = None,
        notes: Optional[str] = None,
    ) -> bool:
        values: dict[str, Any] = {"check_out_time": self._to_storage(check_out_time), "updated_at": func.now()}
        if confidence_score is not None:
            values["confidence_score"] = confidence_score
        if notes is not None:
            values["notes"] = notes

        with self._transaction(f"check out {identity_id}") as session:
            result = session.execute(
                update(AttendanceRow)
                .where(
                    AttendanceRow.identity_id == identity_id,
                    AttendanceRow.attendance_date == day,
                    AttendanceRow.check_in_time.is_not(None),
                    AttendanceRow.check_out_time.is_(None),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def records_for_date(self, day: date) -> List[AttendanceRecord]:
        with self._transaction(f"load attendance for {day.isoformat()}") as session:
            rows = session.scalars(
                select(AttendanceRow)
                .where(AttendanceRow.attendance_date == day)
                .order_by(AttendanceRow.check_in_time.asc(), AttendanceRow.id.asc())
            ).all()
            return [self._to_record(row) for row in rows]

    def identity_ids_with_records(self, day: date) -> set[str]:
        with self._transaction(f"query attendance for {day.isoformat()}") as session:
            rows = session.scalars(
                select(AttendanceRow.identity_id).where(AttendanceRow.attendance_date == day)
            ).all()
            return set(rows)

    def search_attendance(
        self,
        query_text: str = "",
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 2000,
    ) -> List[AttendanceEntry]:
        stmt = select(AttendanceRow, IdentityRow).join(
            IdentityRow, IdentityRow.identity_id == AttendanceRow.identity_id
        )

        if query_text.strip():
            term = f"%{query_text.strip()}%"
            stmt = stmt.where(or_(AttendanceRow.identity_id.like(term), IdentityRow.display_name.like(term)))
        if date_from is not None:
            stmt = stmt.where(AttendanceRow.attendance_date >= date_from)
        if date_to is not None:
            stmt = stmt.where(AttendanceRow.attendance_date <= date_to)

        safe_limit = max(1, min(10_000, int(limit)))
        stmt = stmt.order_by(
            AttendanceRow.attendance_date.desc(),
            AttendanceRow.check_in_time.asc(),
            AttendanceRow.id.asc(),
        ).limit(safe_limit)

        with self._transaction("search attendance") as session:
            return [
                AttendanceEntry(
                    record=self._to_record(attendance),
                    display_name=identity.display_name,
                    metadata=dict(identity.metadata_json or {}),
                )
                for attendance, identity in session.execute(stmt).all()
            ]

    def attendance_stats(self, day: date) -> dict[str, int]:
        with self._transaction("load attendance stats") as session:
            identities = session.scalar(
                select(func.count()).select_from(IdentityRow).where(IdentityRow.is_active.is_(True))
            )
            total = session.scalar(select(func.count()).select_from(AttendanceRow))
            today = session.scalar(
                select(func.count()).select_from(AttendanceRow).where(AttendanceRow.attendance_date == day)
            )
            checked_out = session.scalar(
                select(func.count())
                .select_from(AttendanceRow)
                .where(AttendanceRow.attendance_date == day, AttendanceRow.check_out_time.is_not(None))
            )
            late = session.scalar(
                select(func.count())
                .select_from(AttendanceRow)
                .where(AttendanceRow.attendance_date == day, AttendanceRow.status == AttendanceStatus.LATE.value)
            )

        return {
            "identities": int(identities or 0),
            "attendance_total": int(total or 0),
            "attendance_today": int(today or 0),
            "checked_out_today": int(checked_out or 0),
            "late_today": int(late or 0),
        }

    @staticmethod
    def _identity_row(session: Session, identity_id: str, with_descriptors: bool = False) -> Optional[IdentityRow]:
        stmt = select(IdentityRow).where(IdentityRow.identity_id == identity_id)
        if with_descriptors:
            stmt = stmt.options(selectinload(IdentityRow.descriptors))
        return session.scalar(stmt)

    @staticmethod
    def _descriptor_row(position: int, descriptor: np.ndarray) -> DescriptorRow:
        vector = np.asarray(descriptor, dtype=np.float32)
        if vector.ndim != 1:
            raise DatabaseError("Descriptor must be a 1D vector.")
        return DescriptorRow(position=position, dimension=int(vector.size), vector=vector.tobytes())

    @staticmethod
    def _to_identity(row: IdentityRow) -> Identity:
        descriptors = [
            np.frombuffer(item.vector, dtype=np.float32, count=item.dimension).copy() for item in row.descriptors
        ]
        return Identity(
            identity_id=row.identity_id,
            display_name=row.display_name,
            descriptors=descriptors,
            metadata=dict(row.metadata_json or {}),
            is_active=bool(row.is_active),
        )

    def _to_record(self, row: AttendanceRow) -> AttendanceRecord:
        return AttendanceRecord(
            id=row.id,
            identity_id=row.identity_id,
            attendance_date=row.attendance_date,
            check_in_time=self._from_storage(row.check_in_time),
            check_out_time=self._from_storage(row.check_out_time),
            status=AttendanceStatus(row.status),
            confidence_score=row.confidence_score,
            notes=row.notes,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_storage(self, value: datetime) -> datetime:
        if self.tz is not None and value.tzinfo is not None:
            return value.astimezone(self.tz)
        return value

    def _from_storage(self, value: Optional[datetime]) -> Optional[datetime]:
        # SQLite keeps wall-clock time only; reattach the configured zone.
        if value is None or self.tz is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=self.tz)
        return value.astimezone(self.tz)

from __future__ import annotations

from datetime import date, datetime
from io import BytesIO
from typing import Any, List, Optional

import pandas as pd

from .database import AttendanceDatabase, AttendanceEntry
from .types import Identity


EXPORT_COLUMNS = [
    "Identity ID",
    "External ID",
    "Name",
    "Department",
    "Check In",
    "Check Out",
    "Status",
    "Hours Worked",
    "Confidence Score",
]


def hours_worked(check_in: Optional[datetime], check_out: Optional[datetime]) -> str:
    if check_in is None or check_out is None:
        return ""
    minutes = int((check_out - check_in).total_seconds() // 60)
    return f"{minutes // 60}:{minutes % 60:02d}"


def confidence_label(score: Optional[float]) -> str:
    if score is None:
        return ""
    return f"{score * 100:.1f}%"


class ReportService:
    """Read-only queries over attendance, plus delimited and Excel export."""

    def __init__(self, db: AttendanceDatabase):
        self.db = db

    def records_for_date(self, day: date) -> List[AttendanceEntry]:
        return self.db.search_attendance(date_from=day, date_to=day, limit=10_000)

    def search(
        self,
        query_text: str = "",
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 2000,
    ) -> List[AttendanceEntry]:
        return self.db.search_attendance(query_text=query_text, date_from=date_from, date_to=date_to, limit=limit)

    def stats(self, day: date) -> dict[str, int]:
        stats = self.db.attendance_stats(day)
        stats["absent_today"] = len(self.absentees(day))
        return stats

    def absentees(self, day: date) -> List[Identity]:
        """Active roster members with no attendance record for ``day``."""
        present = self._present_ids(day)
        return [identity for identity in self.db.list_identities(active_only=True) if identity.identity_id not in present]

    def attendance_frame(self, day: date) -> pd.DataFrame:
        data: list[dict[str, Any]] = []
        for entry in self.records_for_date(day):
            record = entry.record
            data.append(
                {
                    "Identity ID": record.identity_id,
                    "External ID": str(entry.metadata.get("external_id", "")),
                    "Name": entry.display_name,
                    "Department": str(entry.metadata.get("department", "")),
                    "Check In": record.check_in_time.strftime("%H:%M:%S") if record.check_in_time else "",
                    "Check Out": record.check_out_time.strftime("%H:%M:%S") if record.check_out_time else "",
                    "Status": record.status.value,
                    "Hours Worked": hours_worked(record.check_in_time, record.check_out_time),
                    "Confidence Score": confidence_label(record.confidence_score),
                }
            )
        return pd.DataFrame(data, columns=EXPORT_COLUMNS)

    def attendance_csv(self, day: date) -> str:
        return self.attendance_frame(day).to_csv(index=False)

    def attendance_excel(self, day: date) -> bytes:
        df = self.attendance_frame(day)
        output = BytesIO()
        with pd.ExcelWriter(output, engine="openpyxl") as writer:
            df.to_excel(writer, index=False, sheet_name="Attendance")
            ws = writer.sheets["Attendance"]
            ws.freeze_panes = "A2"

        output.seek(0)
        return output.read()

    def _present_ids(self, day: date) -> set[str]:
        return self.db.identity_ids_with_records(day)

import io
from datetime import date, datetime, timezone

import pandas as pd
import pytest

from attendance_engine.report_service import EXPORT_COLUMNS, ReportService, confidence_label, hours_worked


TODAY = date(2026, 10, 19)


@pytest.fixture
def reports(db):
    return ReportService(db)


@pytest.fixture
def workday(attendance, enrolled, clock):
    attendance.check_in("alice", confidence=0.873)
    clock.advance(hours=8, minutes=45)
    attendance.check_out("alice")


@pytest.mark.parametrize(
    "check_in, check_out, expected",
    [
        (datetime(2026, 10, 19, 8, 30), datetime(2026, 10, 19, 17, 15), "8:45"),
        (datetime(2026, 10, 19, 8, 30), datetime(2026, 10, 19, 8, 35), "0:05"),
        (datetime(2026, 10, 19, 8, 30), None, ""),
    ],
)
def test_hours_worked(check_in, check_out, expected):
    assert hours_worked(check_in, check_out) == expected


def test_confidence_label():
    assert confidence_label(0.873) == "87.3%"
    assert confidence_label(None) == ""


def test_csv_export(reports, workday):
    frame = pd.read_csv(io.StringIO(reports.attendance_csv(TODAY)), dtype=str, keep_default_na=False)

    assert list(frame.columns) == EXPORT_COLUMNS
    assert len(frame) == 1
    row = frame.iloc[0]
    assert row["Identity ID"] == "alice"
    assert row["External ID"] == "E-100"
    assert row["Department"] == "Research"
    assert row["Check In"] == "08:30:00"
    assert row["Check Out"] == "17:15:00"
    assert row["Status"] == "present"
    assert row["Hours Worked"] == "8:45"
    assert row["Confidence Score"] == "87.3%"


def test_csv_export_for_empty_day_has_header_only(reports, enrolled):
    assert reports.attendance_csv(TODAY).strip() == ",".join(EXPORT_COLUMNS)


def test_excel_export(reports, workday):
    payload = reports.attendance_excel(TODAY)

    assert payload[:2] == b"PK"
    frame = pd.read_excel(io.BytesIO(payload), sheet_name="Attendance", engine="openpyxl")
    assert list(frame.columns) == EXPORT_COLUMNS
    assert frame.iloc[0]["Name"] == "Alice"


def test_absentees_and_stats(reports, workday):
    assert [identity.identity_id for identity in reports.absentees(TODAY)] == ["bob"]

    stats = reports.stats(TODAY)
    assert stats["attendance_today"] == 1
    assert stats["checked_out_today"] == 1
    assert stats["absent_today"] == 1


def test_search_by_name(reports, workday):
    assert [entry.record.identity_id for entry in reports.search("Ali")] == ["alice"]
    assert reports.search("nobody") == []
    assert reports.search(date_from=datetime(2026, 10, 20, tzinfo=timezone.utc).date()) == []

"""
Attendance CSV export.
One row per record, header first, standard CSV quoting.
"""

import csv
import io
from datetime import date
from typing import Iterable, List, Dict

from .database.models import AttendanceRecord, Student, UNKNOWN_STUDENT

EXPORT_HEADER = ["Date", "Time", "Student ID", "Student Name", "Present"]


def export_filename(export_date: date) -> str:
    return f"attendance_export_{export_date.isoformat()}.csv"


def build_export_rows(
    records: Iterable[AttendanceRecord],
    students: Iterable[Student]
) -> List[List[str]]:
    """Flatten records into rows, looking up names in the roster."""
    by_id: Dict[str, Student] = {s.id: s for s in students}
    rows = []
    for record in records:
        student = by_id.get(record.student_id)
        rows.append([
            record.attendance_date.isoformat(),
            record.timestamp.strftime("%I:%M:%S %p"),
            student.student_code if student else record.student_id,
            student.display_name if student else UNKNOWN_STUDENT,
            "Yes" if record.present else "No",
        ])
    return rows


def export_csv(records: Iterable[AttendanceRecord], students: Iterable[Student]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(EXPORT_HEADER)
    writer.writerows(build_export_rows(records, students))
    return buffer.getvalue()

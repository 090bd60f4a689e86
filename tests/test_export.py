import csv
import io
from datetime import date, datetime

from attendance_backend.database import AttendanceRecord, Student
from attendance_backend.export import export_csv, export_filename, build_export_rows, EXPORT_HEADER


def make_student(id, code, first, last):
    return Student(id=id, student_code=code, first_name=first, last_name=last,
                   email="x@example.com", phone_number="1", course="")


def make_record(id, student_id, when):
    return AttendanceRecord(id=id, student_id=student_id, attendance_date=when.date(),
                            timestamp=when, present=True)


def test_one_line_per_record_plus_header():
    roster = [make_student("s1", "A1", "Jane", "Doe"), make_student("s2", "B2", "John", "Roe")]
    records = [
        make_record(1, "s1", datetime(2024, 3, 4, 9, 5, 7)),
        make_record(2, "s2", datetime(2024, 3, 4, 14, 30, 0)),
        make_record(3, "gone", datetime(2024, 3, 4, 15, 0, 0)),
    ]

    text = export_csv(records, roster)
    lines = text.splitlines()

    assert len(lines) == 4
    assert lines[0] == "Date,Time,Student ID,Student Name,Present"
    assert lines[1] == "2024-03-04,09:05:07 AM,A1,Jane Doe,Yes"
    assert lines[2] == "2024-03-04,02:30:00 PM,B2,John Roe,Yes"
    assert lines[3] == "2024-03-04,03:00:00 PM,gone,Unknown,Yes"


def test_fields_with_commas_and_quotes_are_quoted():
    roster = [make_student("s1", "A1", 'Jane "JJ"', "Doe, Jr")]
    records = [make_record(1, "s1", datetime(2024, 3, 4, 9, 0, 0))]

    text = export_csv(records, roster)
    assert '"Jane ""JJ"" Doe, Jr"' in text

    rows = list(csv.reader(io.StringIO(text)))
    assert rows[0] == EXPORT_HEADER
    assert rows[1][3] == 'Jane "JJ" Doe, Jr'


def test_empty_export_is_header_only():
    assert export_csv([], []) == "Date,Time,Student ID,Student Name,Present\n"
    assert build_export_rows([], []) == []


def test_filename_pattern():
    assert export_filename(date(2024, 3, 4)) == "attendance_export_2024-03-04.csv"

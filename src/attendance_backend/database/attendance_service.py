"""
Attendance Service for Face Attendance
======================================
Core business logic for attendance tracking.

Features:
- At most one attendance record per student per calendar day
- Atomic check-then-create per (student, date) key
- Silent no-op for unknown students (tolerates concurrent deletion)
- One immediate retry on transient storage errors
- Daily attendance report and 7-day dashboard summary
"""

import logging
import threading
from collections import Counter
from datetime import datetime, date, timedelta
from typing import Optional, Tuple, Dict, List

from sqlalchemy.exc import IntegrityError, OperationalError

from .models import Student, AttendanceRecord, MarkStatus, UNKNOWN_STUDENT
from .db_manager import get_db_manager, DatabaseManager
from ..errors import PersistenceError, RecordNotFound

# Configure logging
logger = logging.getLogger(__name__)


class AttendanceResult:
    """
    Result of a mark attendance call.
    `created` tells callers whether this call wrote a new record.
    """

    def __init__(
        self,
        status: str,
        message: str,
        student_id: str,
        student_name: Optional[str] = None,
        record: Optional[AttendanceRecord] = None,
        created: bool = False
    ):
        self.status = status
        self.message = message
        self.student_id = student_id
        self.student_name = student_name
        self.record = record
        self.created = created

    @property
    def success(self) -> bool:
        return self.status != MarkStatus.STUDENT_NOT_FOUND.value

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        result = {
            "success": self.success,
            "status": self.status,
            "created": self.created,
            "message": self.message,
            "studentId": self.student_id
        }
        if self.student_name:
            result["studentName"] = self.student_name
        if self.record is not None:
            result["record"] = self.record.to_dict()
        return result


class AttendanceService:
    """
    Main service for handling attendance operations.

    Usage:
        service = AttendanceService()
        result = service.mark_attendance("3f2a...")
        if result.created:
            notify("Marked as Present")
    """

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        """
        Initialize attendance service.

        Args:
            db_manager: Optional DatabaseManager instance. Uses global if not provided.
        """
        self.db = db_manager or get_db_manager()
        self._locks: Dict[Tuple[str, date], threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._cache_config()

    def _cache_config(self):
        """Cache frequently used configuration values."""
        self.retry_attempts = max(0, min(1, self.db.get_config_int("mark_retry_attempts", 1)))
        logger.debug(f"Config cached: retry_attempts={self.retry_attempts}")

    def _key_lock(self, student_id: str, day: date) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get((student_id, day))
            if lock is None:
                # Earlier-day keys are dropped unless a back-dated mark still holds them
                for stale in [k for k, held in self._locks.items() if k[1] < day and not held.locked()]:
                    del self._locks[stale]
                lock = self._locks[(student_id, day)] = threading.Lock()
            return lock

    def mark_attendance(
        self,
        student_id: str,
        timestamp: Optional[datetime] = None
    ) -> AttendanceResult:
        """
        Mark a student present for the local calendar day of `timestamp`.

        This is the main entry point for attendance logging, called after
        a successful face match.

        Args:
            student_id: Opaque ID of the student
            timestamp: Capture instant (defaults to now)

        Returns:
            AttendanceResult; `created` is True only when a new record was written

        Raises:
            PersistenceError: storage failed (after one immediate retry)
        """
        timestamp = timestamp or datetime.now()
        today = timestamp.date()

        with self._key_lock(student_id, today):
            attempt = 0
            while True:
                try:
                    return self._mark_once(student_id, today, timestamp)
                except PersistenceError as e:
                    transient = isinstance(e.__cause__, OperationalError)
                    if not transient or attempt >= self.retry_attempts:
                        logger.error(f"[ATTENDANCE] ERROR marking {student_id}: {e}")
                        raise
                    attempt += 1
                    logger.warning(f"[ATTENDANCE] Transient storage error, retrying: {e}")

    def _mark_once(self, student_id: str, today: date, timestamp: datetime) -> AttendanceResult:
        with self.db.get_session() as session:
            student = session.get(Student, student_id)
            if not student:
                logger.warning(f"[ATTENDANCE] Ignoring mark for unknown student: {student_id}")
                return AttendanceResult(
                    status=MarkStatus.STUDENT_NOT_FOUND.value,
                    message=f"Student {student_id} not found",
                    student_id=student_id
                )

            existing = self._find_record(session, student_id, today)
            if existing:
                return self._already_marked(student, existing)

            record = AttendanceRecord(
                student_id=student_id,
                attendance_date=today,
                timestamp=timestamp,
                present=True
            )
            session.add(record)
            try:
                session.commit()
            except IntegrityError:
                # Another writer created the record between our check and commit
                session.rollback()
                existing = self._find_record(session, student_id, today)
                if existing is None:
                    raise
                return self._already_marked(student, existing)
            session.refresh(record)

            time_str = timestamp.strftime("%I:%M %p")
            message = f"{student.display_name} marked as present at {time_str}"
            logger.info(f"[ATTENDANCE] MARKED: {message}")

            return AttendanceResult(
                status=MarkStatus.MARKED.value,
                message=message,
                student_id=student_id,
                student_name=student.display_name,
                record=record,
                created=True
            )

    @staticmethod
    def _find_record(session, student_id: str, day: date) -> Optional[AttendanceRecord]:
        return session.query(AttendanceRecord).filter_by(
            student_id=student_id,
            attendance_date=day
        ).first()

    @staticmethod
    def _already_marked(student: Student, record: AttendanceRecord) -> AttendanceResult:
        message = f"{student.display_name} already marked at {record.timestamp.strftime('%I:%M %p')}"
        logger.info(f"[ATTENDANCE] ALREADY_MARKED: {message}")
        return AttendanceResult(
            status=MarkStatus.ALREADY_MARKED.value,
            message=message,
            student_id=student.id,
            student_name=student.display_name,
            record=record,
            created=False
        )

    # ============== Maintenance ==============

    def delete_record(self, record_id: int):
        """Delete a single attendance record."""
        with self.db.get_session() as session:
            record = session.get(AttendanceRecord, record_id)
            if not record:
                raise RecordNotFound(f"Attendance record {record_id} not found")
            session.delete(record)
            session.commit()
            logger.info(f"[ATTENDANCE] Deleted record {record_id} ({record.student_id}, {record.attendance_date})")

    def clear_all(self) -> int:
        """Delete every attendance record. Returns the number removed."""
        with self.db.get_session() as session:
            removed = session.query(AttendanceRecord).delete(synchronize_session=False)
            session.commit()
        logger.warning(f"[ATTENDANCE] Cleared all attendance records ({removed} removed)")
        return removed

    # ============== Query Methods ==============

    def list_records(
        self,
        on_date: Optional[date] = None,
        student_id: Optional[str] = None
    ) -> List[AttendanceRecord]:
        """Attendance records ordered by time, optionally filtered by day and student."""
        with self.db.get_session() as session:
            query = session.query(AttendanceRecord)
            if on_date:
                query = query.filter(AttendanceRecord.attendance_date == on_date)
            if student_id:
                query = query.filter(AttendanceRecord.student_id == student_id)
            return query.order_by(AttendanceRecord.timestamp, AttendanceRecord.id).all()

    def get_attendance_by_date(self, on_date: date) -> List[AttendanceRecord]:
        return self.list_records(on_date=on_date)

    def get_attendance_by_student(self, student_id: str) -> List[AttendanceRecord]:
        return self.list_records(student_id=student_id)

    def get_daily_report(self, report_date: Optional[date] = None) -> dict:
        """Get attendance report for a specific date."""
        report_date = report_date or date.today()
        records = self.get_attendance_by_date(report_date)

        with self.db.get_session() as session:
            total_students = session.query(Student).count()

        present_count = len({r.student_id for r in records if r.present})

        return {
            "date": report_date.isoformat(),
            "total_registered": total_students,
            "present_count": present_count,
            "absent_count": max(0, total_students - present_count),
            "attendance_rate": round(present_count / total_students * 100, 1) if total_students > 0 else 0,
            "records": [r.to_dict() for r in records]
        }

    def get_weekly_summary(self, end_date: Optional[date] = None, days: int = 7, recent_limit: int = 5) -> dict:
        """
        Dashboard summary for the `days` days ending at `end_date` (today by default).

        Returns:
            trend: present/absent counts per day, oldest first
            attendance_rate: records in the window over (students x days), in percent
            recent: latest record of each student, newest first, at most `recent_limit`
        """
        end_date = end_date or date.today()
        start_date = end_date - timedelta(days=days - 1)

        with self.db.get_session() as session:
            names = {s.id: s.display_name for s in session.query(Student).all()}
            window = session.query(AttendanceRecord).filter(
                AttendanceRecord.attendance_date >= start_date,
                AttendanceRecord.attendance_date <= end_date
            ).all()
            latest_first = session.query(AttendanceRecord).order_by(
                AttendanceRecord.timestamp.desc(), AttendanceRecord.id.desc()
            )

            recent = []
            seen = set()
            for record in latest_first.yield_per(100):
                if record.student_id in seen:
                    continue
                seen.add(record.student_id)
                recent.append(dict(record.to_dict(), studentName=names.get(record.student_id, UNKNOWN_STUDENT)))
                if len(recent) >= recent_limit:
                    break

        total_students = len(names)
        per_day = Counter(r.attendance_date for r in window if r.present)
        trend = []
        for offset in range(days):
            day = start_date + timedelta(days=offset)
            present = per_day.get(day, 0)
            trend.append({
                "date": day.isoformat(),
                "present": present,
                "absent": max(0, total_students - present)
            })

        possible = total_students * days
        return {
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "total_registered": total_students,
            "today_count": per_day.get(end_date, 0),
            "attendance_rate": round(sum(per_day.values()) / possible * 100, 1) if possible else 0,
            "trend": trend,
            "recent": recent
        }

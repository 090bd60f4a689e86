"""
Database Module for Face Attendance
===================================
Provides SQLite-based student registry and attendance tracking with:
- One attendance record per student per day
- Reference face descriptors stored as typed float32 vectors
- Cascading student removal
"""

from .models import Student, FaceDescriptor, AttendanceRecord, SystemConfig, MarkStatus
from .db_manager import DatabaseManager, get_db_manager, reset_db_manager
from .attendance_service import AttendanceService, AttendanceResult
from .student_service import StudentService, RosterEntry

__all__ = [
    'Student',
    'FaceDescriptor',
    'AttendanceRecord',
    'SystemConfig',
    'MarkStatus',
    'DatabaseManager',
    'get_db_manager',
    'reset_db_manager',
    'AttendanceService',
    'AttendanceResult',
    'StudentService',
    'RosterEntry'
]

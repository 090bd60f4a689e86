"""
Student Registry for Face Attendance
====================================
Registration, re-enrollment and removal of students.

Features:
- Unique human-facing student IDs
- All-or-nothing registration (profile + reference descriptors)
- Descriptor validation at the storage boundary
- Cascading delete of attendance records
"""

import logging
import uuid
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable

import numpy as np
from sqlalchemy.exc import IntegrityError

from .models import Student, FaceDescriptor, AttendanceRecord, descriptor_to_array
from .db_manager import get_db_manager, DatabaseManager
from ..errors import ValidationError, DuplicateStudentId, StudentNotFound, InvalidDescriptor

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("student_code", "first_name", "last_name", "email", "phone_number")
PROFILE_FIELDS = REQUIRED_FIELDS + ("course",)


class RosterEntry:
    """Read-only snapshot of one student used for face matching."""

    __slots__ = ("id", "student_code", "name", "descriptors")

    def __init__(self, id: str, student_code: str, name: str, descriptors: List[np.ndarray]):
        self.id = id
        self.student_code = student_code
        self.name = name
        self.descriptors = descriptors

    def __repr__(self):
        return f"<RosterEntry(id={self.id}, name={self.name}, descriptors={len(self.descriptors)})>"


class StudentService:
    """
    Service for student registration and removal.

    Usage:
        service = StudentService()
        student = service.register_student(
            {"student_code": "A1", "first_name": "Jane", ...},
            descriptors=[embedding]
        )
    """

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        self.db = db_manager or get_db_manager()

    @property
    def embedding_dim(self) -> int:
        return self.db.get_config_int("embedding_dim", 512)

    @property
    def max_descriptors(self) -> int:
        return self.db.get_config_int("max_descriptors_per_student", 10)

    def _validate_profile(self, fields: Dict[str, Any], partial: bool = False) -> Dict[str, str]:
        """Strip profile fields and check the required ones are present."""
        cleaned = {}
        for name in PROFILE_FIELDS:
            if name not in fields or fields[name] is None:
                continue
            cleaned[name] = str(fields[name]).strip()

        required = [n for n in REQUIRED_FIELDS if not partial or n in cleaned]
        missing = [n for n in required if not cleaned.get(n)]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        return cleaned

    def _validate_descriptors(self, descriptors: Iterable) -> List[np.ndarray]:
        dim = self.embedding_dim
        arrays = [descriptor_to_array(d, dim) for d in descriptors]
        if not arrays:
            raise ValidationError("Please capture at least one face image")
        if len(arrays) > self.max_descriptors:
            raise ValidationError(
                f"At most {self.max_descriptors} face descriptors are kept per student"
            )
        return arrays

    def register_student(self, fields: Dict[str, Any], descriptors: Iterable) -> Student:
        """
        Register a new student with their reference face descriptors.

        Nothing is persisted unless every field and descriptor is valid.

        Raises:
            ValidationError: missing fields or no descriptors
            InvalidDescriptor: malformed descriptor
            DuplicateStudentId: student ID already registered
        """
        profile = self._validate_profile(fields)
        arrays = self._validate_descriptors(descriptors)

        with self.db.get_session() as session:
            if session.query(Student).filter_by(student_code=profile["student_code"]).first():
                raise DuplicateStudentId(f"A student with ID {profile['student_code']} already exists")

            course = profile.pop("course", "")
            student = Student(id=uuid.uuid4().hex, registered_at=datetime.now(), course=course, **profile)
            student.descriptors = [
                FaceDescriptor.from_array(array, position) for position, array in enumerate(arrays)
            ]
            session.add(student)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise DuplicateStudentId(f"A student with ID {student.student_code} already exists")
            session.refresh(student)

            logger.info(
                f"[STUDENT] Registered {student.display_name} ({student.student_code}) "
                f"with {len(arrays)} descriptor(s)"
            )
            return student

    def enroll_face(self, student_id: str, descriptor) -> Student:
        """
        Append one reference descriptor to an existing student (re-enrollment).
        When the student is at the limit, the oldest descriptor is dropped.
        """
        array = descriptor_to_array(descriptor, self.embedding_dim)

        with self.db.get_session() as session:
            student = session.get(Student, student_id)
            if not student:
                raise StudentNotFound(f"Student {student_id} not found")

            descriptors = list(student.descriptors)
            next_position = descriptors[-1].position + 1 if descriptors else 0
            while len(descriptors) >= self.max_descriptors:
                oldest = descriptors.pop(0)
                student.descriptors.remove(oldest)

            student.descriptors.append(FaceDescriptor.from_array(array, next_position))
            session.commit()
            session.refresh(student)

            logger.info(f"[STUDENT] Enrolled new face for {student.display_name} "
                        f"({len(student.descriptors)} descriptors)")
            return student

    def update_student(self, student_id: str, fields: Dict[str, Any]) -> Student:
        """Update profile fields; the student ID stays unique."""
        profile = self._validate_profile(fields, partial=True)

        with self.db.get_session() as session:
            student = session.get(Student, student_id)
            if not student:
                raise StudentNotFound(f"Student {student_id} not found")

            new_code = profile.get("student_code")
            if new_code and new_code != student.student_code:
                clash = session.query(Student).filter_by(student_code=new_code).first()
                if clash:
                    raise DuplicateStudentId(f"A student with ID {new_code} already exists")

            for name, value in profile.items():
                setattr(student, name, value)
            session.commit()
            session.refresh(student)
            logger.info(f"[STUDENT] Updated {student.display_name} ({student.student_code})")
            return student

    def delete_student(self, student_id: str) -> int:
        """
        Delete a student together with their descriptors and attendance records.

        Returns:
            Number of attendance records removed
        """
        with self.db.get_session() as session:
            student = session.get(Student, student_id)
            if not student:
                raise StudentNotFound(f"Student {student_id} not found")

            removed = session.query(AttendanceRecord).filter_by(student_id=student_id).delete(
                synchronize_session=False
            )
            session.delete(student)
            session.commit()

            logger.info(f"[STUDENT] Deleted {student.display_name} ({student.student_code}), "
                        f"{removed} attendance record(s) removed")
            return removed

    # ============== Query Methods ==============

    def get_student(self, student_id: str) -> Student:
        with self.db.get_session() as session:
            student = session.get(Student, student_id)
            if not student:
                raise StudentNotFound(f"Student {student_id} not found")
            return student

    def list_students(self) -> List[Student]:
        """All students in registration order."""
        with self.db.get_session() as session:
            return session.query(Student).order_by(Student.registered_at, Student.id).all()

    def load_roster(self) -> List[RosterEntry]:
        """
        Snapshot of every student with at least one usable reference descriptor.

        Descriptors whose length no longer matches `embedding_dim` (the model
        was changed after enrollment) are left out and logged; such students
        need to be re-enrolled.
        """
        dim = self.embedding_dim
        roster = []
        for student in self.list_students():
            descriptors = []
            for descriptor in student.descriptors:
                try:
                    descriptors.append(descriptor_to_array(descriptor.to_array(), dim))
                except InvalidDescriptor as e:
                    logger.warning(f"[STUDENT] Skipping descriptor {descriptor.position} of "
                                   f"{student.display_name} ({student.student_code}): {e.message}")
            if descriptors:
                roster.append(RosterEntry(
                    id=student.id,
                    student_code=student.student_code,
                    name=student.display_name,
                    descriptors=descriptors
                ))
        return roster

"""
Database Models for Face Attendance
===================================
SQLAlchemy ORM models for student registration and attendance tracking.

Tables:
- students: Registered students (profile fields)
- face_descriptors: Reference embeddings captured at enrollment
- attendance_records: At most one record per student per day
- system_config: Configurable system parameters
"""

from datetime import datetime
from enum import Enum

import numpy as np
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Date,
    Text, LargeBinary, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

from ..errors import InvalidDescriptor

Base = declarative_base()

DESCRIPTOR_DTYPE = np.dtype("<f4")

# Display name for records whose student no longer exists
UNKNOWN_STUDENT = "Unknown"


class MarkStatus(str, Enum):
    """Outcome of a mark attendance call."""
    MARKED = "MARKED"
    ALREADY_MARKED = "ALREADY_MARKED"
    STUDENT_NOT_FOUND = "STUDENT_NOT_FOUND"


def descriptor_to_array(values, expected_dim: int) -> np.ndarray:
    """
    Validate a face descriptor and convert it to a float32 vector.

    Raises:
        InvalidDescriptor: wrong shape, wrong length or non-finite values
    """
    try:
        array = np.asarray(values, dtype=np.float32)
    except (TypeError, ValueError):
        raise InvalidDescriptor("Face descriptor must contain only numbers")

    if array.ndim != 1:
        raise InvalidDescriptor(f"Face descriptor must be a flat vector, got shape {array.shape}")
    if array.shape[0] != expected_dim:
        raise InvalidDescriptor(
            f"Face descriptor must have {expected_dim} values, got {array.shape[0]}"
        )
    if not np.all(np.isfinite(array)):
        raise InvalidDescriptor("Face descriptor contains non-finite values")
    return array


class Student(Base):
    """
    Registered students table.
    `id` is the opaque key, `student_code` the human-facing student ID.
    """
    __tablename__ = 'students'

    id = Column(String(32), primary_key=True, index=True)
    student_code = Column(String(50), unique=True, nullable=False, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(200), nullable=False)
    phone_number = Column(String(50), nullable=False)
    course = Column(String(100), nullable=False, default="")
    registered_at = Column(DateTime, default=datetime.now, nullable=False)

    descriptors = relationship(
        "FaceDescriptor",
        order_by="FaceDescriptor.position",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin"
    )

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def __repr__(self):
        return f"<Student(id={self.id}, code={self.student_code}, name={self.display_name})>"

    def to_dict(self, include_descriptors: bool = True) -> dict:
        """Convert to dictionary for API response."""
        result = {
            "id": self.id,
            "studentId": self.student_code,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "email": self.email,
            "phoneNumber": self.phone_number,
            "course": self.course,
            "registrationDate": self.registered_at.isoformat() if self.registered_at else None,
            "descriptorCount": len(self.descriptors)
        }
        if include_descriptors:
            result["faceDescriptors"] = [d.to_array().tolist() for d in self.descriptors]
        return result


class FaceDescriptor(Base):
    """
    One reference embedding per enrollment capture.
    Stored as little-endian float32 bytes with an explicit dimension.
    """
    __tablename__ = 'face_descriptors'

    id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(
        String(32), ForeignKey('students.id', ondelete="CASCADE"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False, default=0)
    dimension = Column(Integer, nullable=False)
    vector = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    @classmethod
    def from_array(cls, array: np.ndarray, position: int) -> "FaceDescriptor":
        array = np.asarray(array, dtype=DESCRIPTOR_DTYPE)
        return cls(position=position, dimension=int(array.shape[0]), vector=array.tobytes())

    def to_array(self) -> np.ndarray:
        array = np.frombuffer(self.vector, dtype=DESCRIPTOR_DTYPE)
        if array.shape[0] != self.dimension:
            raise InvalidDescriptor(
                f"Stored descriptor {self.id} has {array.shape[0]} values, expected {self.dimension}"
            )
        return array.astype(np.float32)

    def __repr__(self):
        return f"<FaceDescriptor(id={self.id}, student={self.student_id}, dim={self.dimension})>"


class AttendanceRecord(Base):
    """
    Attendance fact for one student on one calendar day.
    Absence is represented by the absence of a record.
    """
    __tablename__ = 'attendance_records'

    id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(
        String(32), ForeignKey('students.id', ondelete="CASCADE"), nullable=False, index=True
    )
    attendance_date = Column(Date, nullable=False, index=True)
    timestamp = Column(DateTime, default=datetime.now, nullable=False)
    present = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        UniqueConstraint('student_id', 'attendance_date', name='uq_attendance_student_date'),
    )

    def __repr__(self):
        return f"<AttendanceRecord(id={self.id}, student={self.student_id}, date={self.attendance_date})>"

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "id": self.id,
            "studentId": self.student_id,
            "date": self.attendance_date.isoformat() if self.attendance_date else None,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "present": self.present
        }


class SystemConfig(Base):
    """
    System configuration parameters.
    Allows runtime configuration without code changes.
    """
    __tablename__ = 'system_config'

    key = Column(String(100), primary_key=True)
    value = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<SystemConfig(key={self.key}, value={self.value})>"


# Default configuration values
DEFAULT_CONFIG = {
    "match_threshold": ("0.6", "Maximum Euclidean distance for a face match"),
    "embedding_dim": ("512", "Length of face descriptors produced by the embedding model"),
    "max_descriptors_per_student": ("10", "Reference descriptors kept per student"),
    "mark_retry_attempts": ("1", "Immediate retries after a transient storage error"),
}

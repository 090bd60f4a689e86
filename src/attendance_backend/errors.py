"""
Error Taxonomy for Face Attendance
==================================
Every failure the backend reports to a caller derives from AttendanceError.
Each kind carries the HTTP status the API layer answers with, so routes can
simply raise and let the exception handler in main.py format the response.
"""

from typing import Optional


class AttendanceError(Exception):
    """Base class for all attendance errors."""

    status_code = 400
    kind = "ATTENDANCE_ERROR"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__ or self.kind)
        self.message = message or (self.__class__.__doc__ or self.kind).strip()

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "success": False,
            "error": self.kind,
            "message": self.message
        }


class ValidationError(AttendanceError):
    """Request data failed validation."""
    kind = "VALIDATION_ERROR"


class InvalidDescriptor(ValidationError):
    """Face descriptor has the wrong length or non-numeric values."""
    kind = "INVALID_DESCRIPTOR"


class InvalidImage(ValidationError):
    """Image data could not be decoded."""
    kind = "INVALID_IMAGE"


class NoFaceDetected(ValidationError):
    """No face detected in the enrollment image."""
    kind = "NO_FACE_DETECTED"


class MultipleFacesDetected(ValidationError):
    """More than one face detected in the enrollment image."""
    kind = "MULTIPLE_FACES_DETECTED"


class DuplicateStudentId(AttendanceError):
    """A student with this ID already exists."""
    status_code = 409
    kind = "DUPLICATE_STUDENT_ID"


class StudentNotFound(AttendanceError):
    """Student not found."""
    status_code = 404
    kind = "STUDENT_NOT_FOUND"


class RecordNotFound(AttendanceError):
    """Attendance record not found."""
    status_code = 404
    kind = "RECORD_NOT_FOUND"


class ModelNotReady(AttendanceError):
    """Face recognition model is not loaded yet."""
    status_code = 503
    kind = "MODEL_NOT_READY"


class PersistenceError(AttendanceError):
    """Attendance storage failed."""
    status_code = 500
    kind = "PERSISTENCE_ERROR"


class CameraAccessDenied(AttendanceError):
    """Camera could not be opened."""
    status_code = 503
    kind = "CAMERA_ACCESS_DENIED"

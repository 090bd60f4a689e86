"""
Camera-side gateway: captures frames, sends them to the attendance backend
and decides which recognitions to announce during a session.
"""

from .backend_client import AttendanceClient, BackendError
from .session_tracker import SessionTracker, NotificationKind, DuplicatePolicy
from .capture_session import CaptureSession, OpenCVCamera, RecognitionEvent

__all__ = [
    'AttendanceClient',
    'BackendError',
    'SessionTracker',
    'NotificationKind',
    'DuplicatePolicy',
    'CaptureSession',
    'OpenCVCamera',
    'RecognitionEvent'
]

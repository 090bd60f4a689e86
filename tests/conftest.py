"""
Shared fixtures: a fresh SQLite database per test with 4-value descriptors
so embeddings stay readable.
"""

from datetime import datetime

import numpy as np
import pytest
from fastapi.testclient import TestClient

from attendance_backend import main
from attendance_backend.database import (
    DatabaseManager, StudentService, AttendanceService, reset_db_manager
)
from attendance_backend.errors import NoFaceDetected, MultipleFacesDetected, ModelNotReady
from attendance_backend.face_engine import DetectedFace
from attendance_backend.face_matcher import FaceMatcher

TEST_DIM = 4


def vec(*values):
    return np.array(values, dtype=np.float32)


def student_fields(code="A1", first="Jane", last="Doe", **extra):
    fields = {
        "student_code": code,
        "first_name": first,
        "last_name": last,
        "email": f"{first.lower()}@example.com",
        "phone_number": "555-0100",
        "course": "CS101",
    }
    fields.update(extra)
    return fields


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(tmp_path / "attendance.db")
    assert manager.initialize()
    manager.set_config("embedding_dim", str(TEST_DIM))
    yield manager
    manager.close()


@pytest.fixture
def students(db):
    return StudentService(db)


@pytest.fixture
def attendance(db):
    return AttendanceService(db)


@pytest.fixture
def jane(students):
    return students.register_student(student_fields(), [vec(0, 0, 0, 0)])


class FakeEngine:
    """Stands in for the InsightFace engine with preset detections."""

    def __init__(self, faces=None, ready=True):
        self.faces = faces or []
        self.ready = ready
        self.last_error = None

    @property
    def is_ready(self):
        return self.ready

    async def load(self):
        self.ready = True
        return True

    def detect_faces(self, image):
        if not self.ready:
            raise ModelNotReady()
        return list(self.faces)

    def extract_single(self, image):
        faces = self.detect_faces(image)
        if not faces:
            raise NoFaceDetected()
        if len(faces) > 1:
            raise MultipleFacesDetected()
        return faces[0]


def detected(*values, box=(10, 20, 60, 90)):
    return DetectedFace(box, vec(*values), score=0.99)


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def api(tmp_path, monkeypatch, fake_engine):
    monkeypatch.setattr(main, "LOAD_FACE_MODEL", False)
    monkeypatch.setattr(main, "MODELS_DIR", tmp_path / "models")
    manager = reset_db_manager(tmp_path / "api.db")
    manager.set_config("embedding_dim", str(TEST_DIM))

    with TestClient(main.app) as client:
        monkeypatch.setattr(main, "face_engine", fake_engine)
        monkeypatch.setattr(main, "face_matcher", FaceMatcher(fake_engine))
        yield client

    reset_db_manager()


@pytest.fixture
def frame_bytes():
    import cv2
    ok, encoded = cv2.imencode(".jpg", np.zeros((16, 16, 3), dtype=np.uint8))
    assert ok
    return encoded.tobytes()


def at(day, hour=9, minute=0):
    return datetime.combine(day, datetime.min.time()).replace(hour=hour, minute=minute)

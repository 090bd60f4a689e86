import asyncio

import numpy as np
import pytest

from attendance_backend.errors import ModelNotReady, CameraAccessDenied
from attendance_gateway.capture_session import CaptureSession
from attendance_gateway.session_tracker import SessionTracker, NotificationKind


class FakeCamera:
    def __init__(self, fail_open=False):
        self.fail_open = fail_open
        self.opened = False
        self.released = False
        self.reads = 0

    def open(self):
        if self.fail_open:
            raise CameraAccessDenied("permission denied")
        self.opened = True

    def read(self):
        self.reads += 1
        return np.zeros((16, 16, 3), dtype=np.uint8)

    def release(self):
        self.released = True


def face(student_id, name, created=True, matched=True):
    return {
        "box": {"x": 0, "y": 0, "width": 10, "height": 10},
        "face_match": {"student_id": student_id, "student_name": name, "matched": matched, "distance": 0.2},
        "attendance": {"status": "MARKED" if created else "ALREADY_MARKED", "created": created,
                       "message": ""} if matched else None,
    }


class FakeClient:
    def __init__(self, results=None, delay=0.0, error=None):
        self.results = list(results or [])
        self.delay = delay
        self.error = error
        self.calls = 0
        self.active = 0
        self.max_active = 0

    async def recognize_frame(self, image_bytes):
        assert image_bytes[:2] == b"\xff\xd8"
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if isinstance(self.error, Exception):
                raise self.error
            if self.results:
                return self.results.pop(0)
            return {"faces": []}
        finally:
            self.active -= 1


def run(coro):
    return asyncio.run(coro)


def test_camera_released_after_session():
    camera = FakeCamera()

    async def scenario():
        async with CaptureSession(FakeClient(), camera_factory=lambda: camera, poll_interval=0.01) as session:
            session.start()
            await asyncio.sleep(0.05)
            assert camera.opened
        return session

    session = run(scenario())
    assert camera.released
    assert session.state == "closed"
    assert session.camera is None


def test_camera_released_when_body_raises():
    camera = FakeCamera()

    async def scenario():
        async with CaptureSession(FakeClient(), camera_factory=lambda: camera, poll_interval=0.01) as session:
            session.start()
            raise RuntimeError("view closed")

    with pytest.raises(RuntimeError):
        run(scenario())
    assert camera.released


def test_camera_access_denied_on_open():
    async def scenario():
        async with CaptureSession(FakeClient(), camera_factory=lambda: FakeCamera(fail_open=True)):
            pass

    with pytest.raises(CameraAccessDenied):
        run(scenario())


def test_overlapping_ticks_are_skipped():
    client = FakeClient(delay=0.05)

    async def scenario():
        async with CaptureSession(client, camera_factory=FakeCamera, poll_interval=0.01) as session:
            session.start()
            await asyncio.sleep(0.2)
        return session

    session = run(scenario())
    assert client.max_active == 1
    assert session.skipped_ticks > 0
    assert client.calls >= 2


def test_frame_error_does_not_stop_the_loop():
    client = FakeClient(error=ValueError("bad frame"))

    async def scenario():
        async with CaptureSession(client, camera_factory=FakeCamera, poll_interval=0.01) as session:
            session.start()
            await asyncio.sleep(0.1)
            assert session.state == "running"
        return session

    session = run(scenario())
    assert session.frame_errors >= 2
    assert session.error is None


def test_model_not_ready_halts_and_can_restart():
    client = FakeClient(error=ModelNotReady())

    async def scenario():
        async with CaptureSession(client, camera_factory=FakeCamera, poll_interval=0.01) as session:
            session.start()
            await asyncio.wait_for(session.wait(), timeout=1)
            assert session.state == "error"
            assert isinstance(session.error, ModelNotReady)
            calls_at_halt = client.calls

            client.error = None
            session.start()
            await asyncio.sleep(0.05)
            assert session.state == "running"
            assert session.error is None
            assert client.calls > calls_at_halt

    run(scenario())


def test_notifications_follow_session_tracker():
    results = [
        {"faces": [face("s1", "Jane Doe"), face("s2", "John Roe", created=False)]},
        {"faces": [face("s1", "Jane Doe", created=False)]},
        {"faces": [face("s3", "Nobody", matched=False)]},
    ]
    notified = []

    async def scenario():
        session = CaptureSession(FakeClient(results), camera_factory=FakeCamera,
                                 tracker=SessionTracker(cooldown_seconds=10),
                                 on_notify=notified.append)
        async with session:
            for _ in range(3):
                await session.process_frame()
        return session

    session = run(scenario())
    assert [(e.student_id, e.kind) for e in notified] == [
        ("s1", NotificationKind.MARKED_PRESENT),
        ("s2", NotificationKind.ALREADY_MARKED),
    ]
    assert notified[0].text == "Jane Doe - Marked as Present"
    assert session.frames_processed == 3
    # The tracker is cleared when the session closes
    assert len(session.tracker) == 0


def test_stop_cancels_pending_tick():
    client = FakeClient()

    async def scenario():
        async with CaptureSession(client, camera_factory=FakeCamera, poll_interval=10) as session:
            session.start()
            await asyncio.sleep(0.02)
            await session.stop()
            assert session.state == "stopped"
            calls = client.calls
            await asyncio.sleep(0.02)
            assert client.calls == calls

    run(scenario())

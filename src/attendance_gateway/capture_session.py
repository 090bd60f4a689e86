"""
Attendance Capture Session
==========================
One camera, one cooperative poll loop.

Every `poll_interval` seconds a tick grabs a frame and sends it to the
backend for recognition. A tick that fires while the previous frame is
still being processed is skipped, so extraction calls never overlap.
A failure on a single frame is logged and the loop carries on; a camera
failure or an unloaded backend model halts the loop in an error state
from which start() can be called again.

Usage:
    async with CaptureSession(client, on_notify=print) as session:
        session.start()
        await session.wait()
"""

import asyncio
import logging
import os
from typing import Callable, Optional, List, Dict, Any

import cv2

from attendance_backend.errors import ModelNotReady, CameraAccessDenied
from .backend_client import AttendanceClient
from .session_tracker import SessionTracker, NotificationKind

logger = logging.getLogger(__name__)

# ============== CAPTURE CONFIG ==============
POLL_INTERVAL_SECONDS = float(os.environ.get("POLL_INTERVAL_SECONDS", "1.0"))
CAMERA_INDEX = int(os.environ.get("CAMERA_INDEX", "0"))
JPEG_QUALITY = 80
# ============================================

NOTIFICATION_TEXT = {
    NotificationKind.MARKED_PRESENT: "Marked as Present",
    NotificationKind.ALREADY_MARKED: "Already Marked",
    NotificationKind.DUPLICATE_PUNCH: "Duplicate Punch",
}


class OpenCVCamera:
    """Webcam handle; must be released on every exit path."""

    def __init__(self, index: int = CAMERA_INDEX):
        self.index = index
        self._cap = None

    def open(self):
        cap = cv2.VideoCapture(self.index)
        if not cap.isOpened():
            cap.release()
            raise CameraAccessDenied(f"Could not open camera {self.index}")
        self._cap = cap
        logger.info(f"Camera {self.index} opened")

    def read(self):
        if self._cap is None:
            return None
        ret, frame = self._cap.read()
        return frame if ret else None

    def release(self):
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            logger.info(f"Camera {self.index} released")


class RecognitionEvent:
    """A user-facing notification for one recognized face."""

    def __init__(self, student_id: str, student_name: str, kind: NotificationKind,
                 box: Dict[str, Any], record_created: bool):
        self.student_id = student_id
        self.student_name = student_name
        self.kind = kind
        self.box = box
        self.record_created = record_created

    @property
    def text(self) -> str:
        return f"{self.student_name} - {NOTIFICATION_TEXT[self.kind]}"

    def __repr__(self):
        return f"<RecognitionEvent({self.text})>"


class CaptureSession:
    def __init__(
        self,
        client: AttendanceClient,
        camera_factory: Callable[[], Any] = OpenCVCamera,
        tracker: Optional[SessionTracker] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        on_notify: Optional[Callable[[RecognitionEvent], None]] = None
    ):
        self.client = client
        self.camera_factory = camera_factory
        self.tracker = tracker or SessionTracker()
        self.poll_interval = poll_interval
        self.on_notify = on_notify

        self.camera = None
        self.state = "closed"  # closed, ready, running, stopped, error
        self.error: Optional[Exception] = None
        self.events: List[RecognitionEvent] = []
        self.frames_processed = 0
        self.frame_errors = 0
        self.skipped_ticks = 0

        self._poll_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._in_flight = False

    async def __aenter__(self):
        self.tracker.reset()
        camera = self.camera_factory()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, camera.open)
        self.camera = camera
        self.state = "ready"
        return self

    async def __aexit__(self, exc_type, exc, tb):
        try:
            await self.stop()
        finally:
            if self.camera is not None:
                self.camera.release()
                self.camera = None
            self.tracker.reset()
            self.state = "closed"

    def start(self):
        """Start (or restart after an error) the poll loop."""
        if self.camera is None:
            raise CameraAccessDenied("Camera is not open")
        if self._poll_task is not None and not self._poll_task.done():
            return
        self.error = None
        self.state = "running"
        self._poll_task = asyncio.ensure_future(self._poll_loop())

    async def wait(self):
        """Wait until the loop halts or is stopped."""
        if self._poll_task is None:
            return
        try:
            await self._poll_task
        except asyncio.CancelledError:
            pass

    async def stop(self):
        """Cancel the pending tick and any in-flight frame."""
        if self.state == "running":
            self.state = "stopped"
        for task in (self._poll_task, self._cycle_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._poll_task = None
        self._cycle_task = None
        self._in_flight = False

    async def _poll_loop(self):
        while self.state == "running":
            if self._in_flight:
                self.skipped_ticks += 1
            else:
                self._in_flight = True
                self._cycle_task = asyncio.ensure_future(self._cycle())
            await asyncio.sleep(self.poll_interval)

    def _halt(self, error: Exception):
        logger.error(f"Capture loop halted: {error}")
        self.error = error
        self.state = "error"
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()

    async def _cycle(self):
        try:
            await self.process_frame()
        except (ModelNotReady, CameraAccessDenied) as e:
            self._halt(e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.frame_errors += 1
            logger.error(f"Frame processing error: {e}")
        finally:
            self._in_flight = False

    async def process_frame(self) -> List[RecognitionEvent]:
        """Grab one frame, recognize it, and emit notifications in face order."""
        loop = asyncio.get_running_loop()
        frame = await loop.run_in_executor(None, self.camera.read)
        if frame is None:
            raise CameraAccessDenied("Camera stopped delivering frames")

        ok, encoded = cv2.imencode('.jpg', frame, [cv2.IMWRITE_JPEG_QUALITY, JPEG_QUALITY])
        if not ok:
            raise ValueError("Failed to encode frame")

        result = await self.client.recognize_frame(encoded.tobytes())
        self.frames_processed += 1
        return self.handle_result(result)

    def handle_result(self, result: Dict[str, Any]) -> List[RecognitionEvent]:
        emitted = []
        for face in result.get("faces", []):
            match = face.get("face_match") or {}
            attendance = face.get("attendance")
            if not match.get("matched") or not attendance:
                continue
            if attendance.get("status") == "STUDENT_NOT_FOUND":
                continue

            decision = self.tracker.observe(match["student_id"], attendance.get("created"))
            if not decision.notify:
                continue

            event = RecognitionEvent(
                student_id=match["student_id"],
                student_name=match.get("student_name", match["student_id"]),
                kind=decision.kind,
                box=face.get("box", {}),
                record_created=bool(attendance.get("created"))
            )
            logger.info(f"[SESSION] {event.text}")
            self.events.append(event)
            emitted.append(event)
            if self.on_notify:
                self.on_notify(event)
        return emitted

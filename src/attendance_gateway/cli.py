"""
Attendance Gateway CLI
======================
register  Enroll faces for registered students from a directory of images
          named <studentId>_<anything>.jpg (e.g. A1_Jane_Doe.jpg), or from
          the webcam; with --first/--last/--email/--phone a new student is
          registered from the captured photo.
take      Run an attendance-taking capture session until Ctrl+C.
export    Download the CSV export for a day.
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import date
from pathlib import Path

import cv2

from attendance_backend.errors import AttendanceError, CameraAccessDenied
from attendance_backend.export import export_filename
from .backend_client import AttendanceClient, BackendError
from .capture_session import CaptureSession, OpenCVCamera, CAMERA_INDEX, POLL_INTERVAL_SECONDS
from .session_tracker import SessionTracker, DuplicatePolicy, DEFAULT_COOLDOWN_SECONDS

BACKEND_URL = os.environ.get("BACKEND_URL", "http://localhost:8000")

logger = logging.getLogger(__name__)


async def _students_by_code(client: AttendanceClient) -> dict:
    return {s["studentId"]: s for s in await client.list_students()}


async def register_from_directory(client: AttendanceClient, images_dir: str):
    """
    Enroll all faces from a directory.

    Expected filename format: studentId_firstname_lastname.jpg
    The student must already be registered; the image adds a reference face.
    """
    images_path = Path(images_dir)

    if not images_path.exists():
        print(f"Error: Directory not found: {images_dir}")
        return 1

    image_files = sorted(
        list(images_path.glob("*.jpg")) + list(images_path.glob("*.png")) + list(images_path.glob("*.jpeg"))
    )
    print(f"Found {len(image_files)} images in {images_dir}")

    students = await _students_by_code(client)
    success_count = 0
    fail_count = 0

    for img_path in image_files:
        student_code = img_path.stem.split("_")[0]
        student = students.get(student_code)
        if not student:
            print(f"Skipping {img_path.name} - no registered student {student_code}")
            fail_count += 1
            continue

        print(f"Enrolling: {student['firstName']} {student['lastName']} ({student_code})...", end=" ")
        try:
            await client.enroll_face(student["id"], img_path.read_bytes())
            print("✓")
            success_count += 1
        except (BackendError, AttendanceError) as e:
            print(f"✗ {e}")
            fail_count += 1

    print(f"\n{'=' * 40}")
    print("Enrollment complete:")
    print(f"  Success: {success_count}")
    print(f"  Failed: {fail_count}")
    return 0 if fail_count == 0 else 1


def capture_webcam_frame(student_label: str, camera_index: int = CAMERA_INDEX):
    """Show the webcam and return the frame captured with SPACE, or None."""
    print(f"Opening webcam to capture face for {student_label}...")
    print("Press SPACE to capture, ESC to cancel")

    camera = OpenCVCamera(camera_index)
    camera.open()
    try:
        while True:
            frame = camera.read()
            if frame is None:
                return None

            display = frame.copy()
            cv2.putText(display, f"Enrolling: {student_label}", (10, 30),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.7, (0, 255, 0), 2)
            cv2.putText(display, "SPACE: Capture | ESC: Cancel", (10, 60),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 255, 255), 1)
            cv2.imshow("Face Enrollment", display)

            key = cv2.waitKey(1) & 0xFF
            if key == 27:  # ESC
                print("Cancelled")
                return None
            if key == 32:  # SPACE
                return frame
    finally:
        camera.release()
        cv2.destroyAllWindows()


async def register_from_webcam(client: AttendanceClient, args) -> int:
    """
    Capture a face from the webcam. Existing students get an extra reference
    face; new students are registered with the profile given on the command line.
    """
    students = await _students_by_code(client)
    student = students.get(args.id)
    profile = None
    if not student:
        missing = [flag for flag in ("first", "last", "email", "phone") if not getattr(args, flag)]
        if missing:
            print(f"Error: new student {args.id} needs --{' --'.join(missing)}")
            return 1
        profile = {
            "studentId": args.id,
            "firstName": args.first,
            "lastName": args.last,
            "email": args.email,
            "phoneNumber": args.phone,
            "course": args.course or ""
        }

    loop = asyncio.get_running_loop()
    frame = await loop.run_in_executor(None, capture_webcam_frame, args.id, args.camera)
    if frame is None:
        return 1

    _, buffer = cv2.imencode('.jpg', frame)
    try:
        if profile:
            print("Registering student...")
            result = await client.register_student_images(profile, [buffer.tobytes()])
            student = result["student"]
        else:
            print("Enrolling face...")
            await client.enroll_face(student["id"], buffer.tobytes())
    except (BackendError, AttendanceError) as e:
        print(f"✗ Enrollment failed: {e}")
        return 1
    print(f"✓ Successfully enrolled: {student['firstName']} {student['lastName']}")
    return 0


async def take_attendance(client: AttendanceClient, args) -> int:
    health = await client.health_check()
    if health.get("status") != "online":
        print(f"Backend is offline: {health.get('error', 'unknown error')}")
        return 1
    if not health.get("face_recognition_model"):
        print("Backend model not loaded, requesting initialization...")
        loaded = await client.load_model()
        if not loaded.get("success"):
            print(f"Model failed to load: {loaded.get('model_error')}")
            return 1

    tracker = SessionTracker(cooldown_seconds=args.cooldown, duplicate_policy=args.duplicates)
    session = CaptureSession(
        client,
        camera_factory=lambda: OpenCVCamera(args.camera),
        tracker=tracker,
        poll_interval=args.interval,
        on_notify=lambda event: print(f"  {event.text}")
    )

    try:
        async with session:
            print("Taking attendance. Press Ctrl+C to stop.")
            session.start()
            await session.wait()
    except CameraAccessDenied as e:
        print(f"Error: {e}")
        return 1

    print(f"Frames processed: {session.frames_processed}, notifications: {len(session.events)}")
    if session.error:
        print(f"Stopped with error: {session.error}")
        return 1
    return 0


async def export_attendance(client: AttendanceClient, export_date: str, output: str) -> int:
    day = date.fromisoformat(export_date) if export_date else date.today()
    content = await client.export_csv(day.isoformat())
    target = Path(output) if output else Path(export_filename(day))
    target.write_text(content, encoding="utf-8")
    print(f"Saved {max(0, len(content.splitlines()) - 1)} record(s) to {target}")
    return 0


async def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Face Attendance Gateway")
    parser.add_argument("--backend", type=str, default=BACKEND_URL, help="Backend URL")
    sub = parser.add_subparsers(dest="command", required=True)

    reg = sub.add_parser("register", help="Enroll reference faces")
    reg.add_argument("--dir", type=str, help="Directory containing face images")
    reg.add_argument("--webcam", action="store_true", help="Capture from webcam")
    reg.add_argument("--id", type=str, help="Student ID for webcam capture")
    reg.add_argument("--first", type=str, help="First name (new students)")
    reg.add_argument("--last", type=str, help="Last name (new students)")
    reg.add_argument("--email", type=str, help="Email (new students)")
    reg.add_argument("--phone", type=str, help="Phone number (new students)")
    reg.add_argument("--course", type=str, help="Course (new students)")
    reg.add_argument("--camera", type=int, default=CAMERA_INDEX)

    take = sub.add_parser("take", help="Take attendance from the webcam")
    take.add_argument("--camera", type=int, default=CAMERA_INDEX)
    take.add_argument("--interval", type=float, default=POLL_INTERVAL_SECONDS)
    take.add_argument("--cooldown", type=float, default=DEFAULT_COOLDOWN_SECONDS)
    take.add_argument("--duplicates", choices=[p.value for p in DuplicatePolicy],
                      default=DuplicatePolicy.NOTIFY.value)

    exp = sub.add_parser("export", help="Download the CSV export")
    exp.add_argument("--date", type=str, help="Date in YYYY-MM-DD format (default today)")
    exp.add_argument("--output", type=str, help="Output file")

    args = parser.parse_args(argv)

    async with AttendanceClient(args.backend) as client:
        if args.command == "register":
            if args.dir:
                return await register_from_directory(client, args.dir)
            if args.webcam:
                if not args.id:
                    parser.error("--id required for webcam capture")
                return await register_from_webcam(client, args)
            parser.error("register needs --dir or --webcam")
        if args.command == "take":
            return await take_attendance(client, args)
        return await export_attendance(client, args.date, args.output)


def run():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nStopped")


if __name__ == "__main__":
    run()

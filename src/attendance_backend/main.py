"""
Face Attendance Backend
=======================
Flow:
1. Students register with one or more reference face descriptors
2. Camera gateway uploads a frame to /recognize
3. InsightFace (buffalo_l) detects every face and extracts its embedding
4. Each embedding is matched against the roster by Euclidean distance
5. Matched students are marked present, at most once per day
"""

import os
import logging
from pathlib import Path
from typing import Optional, Dict, Any, List
from datetime import datetime, date

from fastapi import FastAPI, File, Form, UploadFile, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from .database import get_db_manager, AttendanceService, StudentService, MarkStatus
from .errors import AttendanceError, ValidationError, ModelNotReady, PersistenceError
from .export import export_csv, export_filename
from .face_engine import FaceEmbeddingEngine, decode_image
from .face_matcher import FaceMatcher, FaceMatch, DEFAULT_MATCH_THRESHOLD

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ============== Configuration ==============
MODELS_DIR = Path(os.environ.get("MODELS_DIR", Path.cwd() / "models"))
INSIGHTFACE_MODEL_NAME = os.environ.get("INSIGHTFACE_MODEL_NAME", "buffalo_l")
LOAD_FACE_MODEL = os.environ.get("LOAD_FACE_MODEL", "true").lower() in ("true", "1", "yes", "on")
# ==========================================

app = FastAPI(
    title="Face Attendance API",
    description="Student attendance marked by face recognition using InsightFace embeddings",
    version="1.0.0"
)

# CORS middleware for the browser front-end and local gateway
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============== Request / Response Models ==============
class StudentRegistration(BaseModel):
    student_code: Optional[str] = Field(None, alias="studentId")
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")
    email: Optional[str] = None
    phone_number: Optional[str] = Field(None, alias="phoneNumber")
    course: Optional[str] = ""
    face_descriptors: List[List[float]] = Field(default_factory=list, alias="faceDescriptors")


class StudentUpdate(BaseModel):
    student_code: Optional[str] = Field(None, alias="studentId")
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")
    email: Optional[str] = None
    phone_number: Optional[str] = Field(None, alias="phoneNumber")
    course: Optional[str] = None


class DescriptorPayload(BaseModel):
    descriptor: List[float]


class MarkRequest(BaseModel):
    student_id: str = Field(..., alias="studentId")


class AttendanceInfo(BaseModel):
    """Attendance marking result."""
    status: str = Field(..., description="MARKED, ALREADY_MARKED or STUDENT_NOT_FOUND")
    created: bool = Field(..., description="Whether this call created a new record")
    message: str = Field(..., description="Human-readable status message")
    record_id: Optional[int] = None
    date: Optional[str] = None


class RecognizedFace(BaseModel):
    box: Dict[str, Any]
    face_match: Optional[FaceMatch] = None
    attendance: Optional[AttendanceInfo] = None


class RecognitionResponse(BaseModel):
    success: bool
    face_count: int
    faces: List[RecognizedFace]
    processing_time_ms: float
    timestamp: str
    message: str


def _profile_fields(body: BaseModel) -> Dict[str, Any]:
    names = ("student_code", "first_name", "last_name", "email", "phone_number", "course")
    return {name: getattr(body, name) for name in names if getattr(body, name) is not None}


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError("Invalid date format. Use YYYY-MM-DD")


# ============== Global Service Instances ==============
face_engine: Optional[FaceEmbeddingEngine] = None
face_matcher: Optional[FaceMatcher] = None
student_service: Optional[StudentService] = None
attendance_service: Optional[AttendanceService] = None


@app.exception_handler(AttendanceError)
async def attendance_error_handler(request: Request, exc: AttendanceError):
    logger.warning(f"{request.method} {request.url.path} -> {exc.kind}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
async def startup_event():
    """Initialize database and models on startup."""
    global face_engine, face_matcher, student_service, attendance_service

    logger.info("=" * 60)
    logger.info("Starting Face Attendance Backend")
    logger.info("=" * 60)

    MODELS_DIR.mkdir(parents=True, exist_ok=True)

    db_manager = get_db_manager()
    db_initialized = db_manager.is_initialized
    threshold = DEFAULT_MATCH_THRESHOLD
    if db_initialized:
        student_service = StudentService(db_manager)
        attendance_service = AttendanceService(db_manager)
        threshold = db_manager.get_config_float("match_threshold", DEFAULT_MATCH_THRESHOLD)
        db_stats = db_manager.get_stats()
        logger.info(f"Database: ✓ Initialized ({db_stats['total_students']} students, "
                    f"{db_stats['total_records']} records)")
    else:
        logger.error("Database: ✗ Initialization failed - attendance tracking disabled")

    face_engine = FaceEmbeddingEngine(MODELS_DIR, model_name=INSIGHTFACE_MODEL_NAME)
    face_matcher = FaceMatcher(face_engine, threshold=threshold)
    if LOAD_FACE_MODEL:
        await face_engine.load()

    logger.info("-" * 60)
    logger.info(f"Face Recognition: {'✓ Loaded' if face_engine.is_ready else '✗ Not Available'}")
    logger.info(f"Match Threshold: {threshold}")
    logger.info(f"Attendance DB: {'✓ Ready' if db_initialized else '✗ Disabled'}")
    logger.info("=" * 60)


def _students() -> StudentService:
    if student_service is None:
        raise PersistenceError("Attendance database not available")
    return student_service


def _attendance() -> AttendanceService:
    if attendance_service is None:
        raise PersistenceError("Attendance database not available")
    return attendance_service


def _require_model():
    if face_engine is None or not face_engine.is_ready:
        raise ModelNotReady()


def _attendance_info(result) -> AttendanceInfo:
    record = result.record
    return AttendanceInfo(
        status=result.status,
        created=result.created,
        message=result.message,
        record_id=record.id if record is not None else None,
        date=record.attendance_date.isoformat() if record is not None else None
    )


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "status": "online",
        "service": "Face Attendance API",
        "face_recognition_model": bool(face_engine and face_engine.is_ready),
        "model_error": face_engine.last_error if face_engine else None,
        "match_threshold": face_matcher.threshold if face_matcher else None,
        "attendance_database": attendance_service is not None
    }


@app.post("/model/load")
async def load_model():
    """Retry model initialization after a failure."""
    if face_engine is None:
        raise AttendanceError("Service is not started")
    loaded = await face_engine.load()
    return {"success": loaded, "face_recognition_model": loaded, "model_error": face_engine.last_error}


# ============== Student Endpoints ==============

@app.get("/students")
async def list_students():
    """List all registered students."""
    students = _students().list_students()
    return {"students": [s.to_dict() for s in students], "count": len(students)}


@app.post("/students/register", status_code=201)
async def register_student(body: StudentRegistration):
    """Register a new student with face descriptors captured by the client."""
    student = _students().register_student(_profile_fields(body), body.face_descriptors)
    return {"success": True, "message": f"Student registered: {student.display_name}",
            "student": student.to_dict()}


@app.post("/students/register/images", status_code=201)
async def register_student_from_images(
    student_code: str = Form(..., alias="studentId"),
    first_name: str = Form(..., alias="firstName"),
    last_name: str = Form(..., alias="lastName"),
    email: str = Form(...),
    phone_number: str = Form(..., alias="phoneNumber"),
    course: str = Form(""),
    images: List[UploadFile] = File(...)
):
    """
    Register a new student from enrollment photos.
    Every photo must contain exactly one face; otherwise nothing is saved.
    """
    _require_model()
    descriptors = []
    for image in images:
        img = decode_image(await image.read())
        face = await run_in_threadpool(face_engine.extract_single, img)
        descriptors.append(face.embedding)

    fields = {
        "student_code": student_code,
        "first_name": first_name,
        "last_name": last_name,
        "email": email,
        "phone_number": phone_number,
        "course": course
    }
    student = _students().register_student(fields, descriptors)
    return {"success": True, "message": f"Student registered: {student.display_name}",
            "student": student.to_dict(include_descriptors=False)}


@app.get("/students/{student_id}")
async def get_student(student_id: str):
    return {"student": _students().get_student(student_id).to_dict()}


@app.put("/students/{student_id}")
async def update_student(student_id: str, body: StudentUpdate):
    student = _students().update_student(student_id, _profile_fields(body))
    return {"success": True, "student": student.to_dict()}


@app.delete("/students/{student_id}")
async def delete_student(student_id: str):
    """Delete a student and all of their attendance records."""
    removed = _students().delete_student(student_id)
    return {"success": True, "message": f"Student deleted: {student_id}", "records_removed": removed}


@app.post("/students/{student_id}/enroll")
async def enroll_face(student_id: str, image: UploadFile = File(...)):
    """
    Capture a reference face for an existing student.
    The image must contain exactly one face.
    """
    _require_model()
    img = decode_image(await image.read())
    face = await run_in_threadpool(face_engine.extract_single, img)
    student = _students().enroll_face(student_id, face.embedding)
    return {"success": True, "box": face.to_dict(), "student": student.to_dict(include_descriptors=False)}


@app.post("/students/{student_id}/descriptors")
async def add_descriptor(student_id: str, body: DescriptorPayload):
    """Append a face descriptor extracted by the client."""
    student = _students().enroll_face(student_id, body.descriptor)
    return {"success": True, "student": student.to_dict(include_descriptors=False)}


# ============== Attendance Endpoints ==============

@app.get("/attendance")
async def list_attendance(
    date: Optional[str] = Query(None, description="Date in YYYY-MM-DD format"),
    student_id: Optional[str] = Query(None, description="Filter by student")
):
    records = _attendance().list_records(on_date=_parse_date(date), student_id=student_id)
    return {"records": [r.to_dict() for r in records], "count": len(records)}


@app.post("/attendance")
async def mark_attendance(body: MarkRequest):
    """Mark a student present for today. A second mark on the same day changes nothing."""
    result = _attendance().mark_attendance(body.student_id)
    status_code = 201 if result.created else 200
    if result.status == MarkStatus.STUDENT_NOT_FOUND.value:
        status_code = 404
    return JSONResponse(status_code=status_code, content=result.to_dict())


@app.get("/attendance/export")
async def export_attendance(date: Optional[str] = Query(None, description="Date in YYYY-MM-DD format")):
    """Download the day's attendance as CSV."""
    export_date = _parse_date(date) or datetime.now().date()
    records = _attendance().get_attendance_by_date(export_date)
    content = export_csv(records, _students().list_students())
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{export_filename(export_date)}"'}
    )


@app.get("/attendance/daily-report")
async def get_daily_report(date: Optional[str] = Query(None, description="Date in YYYY-MM-DD format")):
    """Get daily attendance report with summary."""
    return {"success": True, "report": _attendance().get_daily_report(_parse_date(date))}


@app.get("/attendance/summary")
async def get_attendance_summary(
    date: Optional[str] = Query(None, description="Last day of the window, YYYY-MM-DD (default today)"),
    days: int = Query(7, ge=1, le=31)
):
    """Dashboard summary: per-day trend, window attendance rate, recent check-ins."""
    return {"success": True, "summary": _attendance().get_weekly_summary(_parse_date(date), days=days)}


@app.delete("/attendance/{record_id}")
async def delete_attendance(record_id: int):
    _attendance().delete_record(record_id)
    return {"success": True, "message": "Attendance record deleted"}


@app.delete("/attendance")
async def clear_attendance():
    removed = _attendance().clear_all()
    return {"success": True, "records_removed": removed}


# ============== Recognition Endpoints ==============

@app.post("/match")
async def match_embedding(body: DescriptorPayload):
    """Match one embedding against the roster without marking attendance."""
    _require_model()
    result = face_matcher.match(body.descriptor, _students().load_roster())
    return {"matched": bool(result and result.matched), "face_match": result}


@app.post("/recognize", response_model=RecognitionResponse)
async def recognize_faces(image: UploadFile = File(...)):
    """
    Main recognition endpoint.

    Flow:
    1. Decode the uploaded frame
    2. Detect every face and extract embeddings
    3. Match each face against the roster snapshot
    4. Mark matched students present for today
    """
    start_time = datetime.now()

    _require_model()
    img = decode_image(await image.read())
    detected = await run_in_threadpool(face_engine.detect_faces, img)
    roster = _students().load_roster()

    faces = []
    for face in detected:
        face_match = face_matcher.match(face.embedding, roster)
        attendance = None
        if face_match and face_match.matched:
            result = _attendance().mark_attendance(face_match.student_id)
            attendance = _attendance_info(result)
        faces.append(RecognizedFace(box=face.to_dict(), face_match=face_match, attendance=attendance))

    recognized = [f for f in faces if f.attendance is not None]
    if not faces:
        message = "No face detected in image"
    elif recognized:
        message = "Face recognized: " + ", ".join(f.face_match.student_name for f in recognized)
    else:
        message = "Face not recognized - no matching student found"

    return RecognitionResponse(
        success=bool(recognized),
        face_count=len(faces),
        faces=faces,
        processing_time_ms=(datetime.now() - start_time).total_seconds() * 1000,
        timestamp=datetime.now().isoformat(),
        message=message
    )


@app.get("/stats")
async def get_stats():
    """Get attendance database statistics."""
    return {"success": True, "stats": get_db_manager().get_stats()}


def run():
    import uvicorn
    uvicorn.run(
        app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000"))
    )


if __name__ == "__main__":
    run()

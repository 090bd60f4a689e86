"""
Backend Client for Face Attendance API
======================================
Client module connecting the camera gateway to the attendance backend.
"""

import aiohttp
import asyncio
import logging
from typing import Optional, Dict, Any, List

from attendance_backend.errors import ModelNotReady, PersistenceError

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Backend answered with an error or could not be reached."""

    def __init__(self, message: str, status: Optional[int] = None, kind: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.kind = kind


class AttendanceClient:
    """
    Async client for communicating with the Face Attendance Backend.
    """

    def __init__(self, backend_url: str = "http://localhost:8000", timeout: float = 30):
        self.backend_url = backend_url.rstrip('/')
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self.session

    async def close(self):
        """Close the client session."""
        if self.session and not self.session.closed:
            await self.session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _request(self, method: str, path: str, **kwargs) -> aiohttp.ClientResponse:
        session = await self._get_session()
        try:
            response = await session.request(method, f"{self.backend_url}{path}", **kwargs)
        except asyncio.TimeoutError:
            logger.error(f"{method} {path} timed out")
            raise BackendError("Request timed out")
        except aiohttp.ClientError as e:
            logger.error(f"Connection error: {e}")
            raise BackendError(f"Connection failed: {e}")

        if response.status >= 400:
            payload = await self._error_payload(response)
            kind = payload.get("error")
            message = payload.get("message") or payload.get("detail") or f"Backend error: {response.status}"
            logger.error(f"{method} {path} failed: {response.status} - {message}")
            if kind == ModelNotReady.kind:
                raise ModelNotReady(message)
            if kind == PersistenceError.kind:
                raise PersistenceError(message)
            raise BackendError(str(message), status=response.status, kind=kind)
        return response

    @staticmethod
    async def _error_payload(response: aiohttp.ClientResponse) -> Dict[str, Any]:
        try:
            payload = await response.json(content_type=None)
            return payload if isinstance(payload, dict) else {}
        except (aiohttp.ContentTypeError, ValueError):
            return {"message": await response.text()}

    async def _json(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        response = await self._request(method, path, **kwargs)
        async with response:
            return await response.json()

    async def health_check(self) -> Dict[str, Any]:
        """Check backend health status."""
        try:
            return await self._json("GET", "/")
        except BackendError as e:
            logger.error(f"Health check failed: {e}")
            return {"status": "offline", "error": str(e)}

    async def load_model(self) -> Dict[str, Any]:
        """Ask the backend to retry model initialization."""
        return await self._json("POST", "/model/load")

    async def recognize_frame(self, image_bytes: bytes) -> Dict[str, Any]:
        """
        Send one frame for recognition; matched students are marked present.

        Args:
            image_bytes: JPEG encoded image bytes

        Returns:
            Recognition result from backend

        Raises:
            ModelNotReady: backend model not loaded
            PersistenceError: backend failed to store attendance
            BackendError: any other failure
        """
        async with self._lock:  # Prevent concurrent requests
            data = aiohttp.FormData()
            data.add_field('image', image_bytes, filename='capture.jpg', content_type='image/jpeg')
            result = await self._json("POST", "/recognize", data=data)
            logger.info(f"Recognition result: {result.get('message', 'Unknown')}")
            return result

    async def register_student_images(self, profile: Dict[str, str], images: List[bytes]) -> Dict[str, Any]:
        """
        Register a student from enrollment photos; the backend extracts the faces.

        Args:
            profile: camelCase profile fields (studentId, firstName, ...)
            images: JPEG encoded images, one face each
        """
        data = aiohttp.FormData()
        for name, value in profile.items():
            data.add_field(name, str(value))
        for index, image_bytes in enumerate(images):
            data.add_field('images', image_bytes, filename=f'enroll_{index}.jpg', content_type='image/jpeg')
        return await self._json("POST", "/students/register/images", data=data)

    async def enroll_face(self, student_id: str, image_bytes: bytes) -> Dict[str, Any]:
        """
        Add a reference face for an existing student.

        Args:
            student_id: Opaque student ID
            image_bytes: JPEG encoded image bytes with exactly one face
        """
        data = aiohttp.FormData()
        data.add_field('image', image_bytes, filename='register.jpg', content_type='image/jpeg')
        return await self._json("POST", f"/students/{student_id}/enroll", data=data)

    async def list_students(self) -> List[Dict[str, Any]]:
        """Get list of registered students."""
        result = await self._json("GET", "/students")
        return result.get("students", [])

    async def export_csv(self, export_date: Optional[str] = None) -> str:
        """Download the CSV export for a day (today when not given)."""
        params = {"date": export_date} if export_date else None
        response = await self._request("GET", "/attendance/export", params=params)
        async with response:
            return await response.text(encoding="utf-8")

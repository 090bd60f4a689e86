"""
Face Embedding Engine
=====================
Thin wrapper around InsightFace (buffalo_l) that detects faces and produces
one embedding per face. Model loading is idempotent and runs off the event
loop; until it completes, every call raises ModelNotReady.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Tuple, Optional

import cv2
import numpy as np

from .errors import ModelNotReady, NoFaceDetected, MultipleFacesDetected, InvalidImage

logger = logging.getLogger(__name__)


class DetectedFace:
    """One detected face: bounding box (x1, y1, x2, y2) and its embedding."""

    __slots__ = ("bbox", "embedding", "score")

    def __init__(self, bbox: Tuple[int, int, int, int], embedding: np.ndarray, score: float = 0.0):
        self.bbox = bbox
        self.embedding = embedding
        self.score = score

    def to_dict(self) -> dict:
        x1, y1, x2, y2 = self.bbox
        return {"x": x1, "y": y1, "width": x2 - x1, "height": y2 - y1, "score": round(self.score, 3)}


def get_onnx_providers() -> list:
    """
    Get available ONNX Runtime execution providers.
    CUDA is used only when ONNX Runtime reports it; CPU is always the fallback.
    """
    providers = []

    try:
        import onnxruntime as ort
        if 'CUDAExecutionProvider' in ort.get_available_providers():
            providers.append('CUDAExecutionProvider')
            logger.info("CUDA is available - using GPU acceleration")
    except Exception as e:
        logger.debug(f"CUDA availability check failed: {e}")

    providers.append('CPUExecutionProvider')

    if len(providers) == 1:
        logger.info("Using CPU-only execution (CUDA not available)")

    return providers


def decode_image(contents: bytes) -> np.ndarray:
    """Decode JPEG/PNG bytes into a BGR image."""
    nparr = np.frombuffer(contents, np.uint8)
    img = cv2.imdecode(nparr, cv2.IMREAD_COLOR) if nparr.size else None
    if img is None:
        raise InvalidImage("Invalid image data")
    return img


class FaceEmbeddingEngine:
    """
    Face detection + embedding extraction.

    Usage:
        engine = FaceEmbeddingEngine(models_dir)
        await engine.load()
        faces = engine.detect_faces(image)
    """

    def __init__(
        self,
        models_dir: Path,
        model_name: str = "buffalo_l",
        det_size: Tuple[int, int] = (640, 640),
        det_thresh: float = 0.5
    ):
        self.models_dir = Path(models_dir)
        self.model_name = model_name
        self.det_size = det_size
        self.det_thresh = det_thresh
        self._analyzer = None
        self._load_lock: Optional[asyncio.Lock] = None
        self.last_error: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self._analyzer is not None

    def _load_sync(self):
        from insightface.app import FaceAnalysis

        providers = get_onnx_providers()
        logger.info(f"Loading InsightFace model: {self.model_name}")
        logger.info(f"Using execution providers: {providers}")

        analyzer = FaceAnalysis(
            name=self.model_name,
            root=str(self.models_dir),
            providers=providers
        )
        # ctx_id: -1 for CPU, 0 for GPU
        ctx_id = 0 if 'CUDAExecutionProvider' in providers else -1
        analyzer.prepare(ctx_id=ctx_id, det_size=self.det_size, det_thresh=self.det_thresh)
        return analyzer

    async def load(self) -> bool:
        """
        Load the model once. Concurrent callers wait for the same load;
        a failed load leaves the engine not ready so it can be retried.
        """
        if self.is_ready:
            return True
        if self._load_lock is None:
            self._load_lock = asyncio.Lock()

        async with self._load_lock:
            if self.is_ready:
                return True
            try:
                loop = asyncio.get_running_loop()
                self._analyzer = await loop.run_in_executor(None, self._load_sync)
                self.last_error = None
                logger.info("InsightFace model loaded successfully")
                return True
            except ImportError as e:
                self.last_error = f"insightface not available: {e}"
            except Exception as e:
                self.last_error = str(e)
            logger.error(f"Failed to load InsightFace model: {self.last_error}")
            return False

    def detect_faces(self, image: np.ndarray) -> List[DetectedFace]:
        """Detect every face in the image, in detector order."""
        if not self.is_ready:
            raise ModelNotReady()

        faces = []
        for face in self._analyzer.get(image):
            bbox = tuple(int(v) for v in face.bbox.astype(int))
            embedding = np.asarray(face.normed_embedding, dtype=np.float32)
            faces.append(DetectedFace(bbox, embedding, float(getattr(face, "det_score", 0.0))))
        return faces

    def extract_single(self, image: np.ndarray) -> DetectedFace:
        """
        Enrollment capture: exactly one face must be visible.

        Raises:
            NoFaceDetected, MultipleFacesDetected
        """
        faces = self.detect_faces(image)
        if not faces:
            raise NoFaceDetected("No face detected. Please ensure your face is clearly visible")
        if len(faces) > 1:
            raise MultipleFacesDetected(
                f"{len(faces)} faces detected. Please ensure only one face is in the frame"
            )
        return faces[0]

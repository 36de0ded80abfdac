import asyncio
import base64
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import cv2
import numpy as np
import onnxruntime as ort

from config import (
    AMBIGUOUS_FACE_RATIO,
    DESCRIPTOR_LENGTH,
    FACE_MARGIN,
    INPUT_SIZE,
    JPEG_QUALITY,
    MIN_FACE_SIZE,
    MODEL_PATH,
    SNAPSHOT_PADDING,
    SNAPSHOT_SIZE,
)

logger = logging.getLogger(__name__)


class ModelLoadError(RuntimeError):
    """The face models could not be loaded; no matching can happen."""


class ModelState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass
class FaceModels:
    detector: "cv2.CascadeClassifier"
    session: "ort.InferenceSession"


def load_face_models(model_path=MODEL_PATH):
    """Load the Haar cascade detector and the ONNX descriptor network (blocking)."""
    model_path = Path(model_path)
    if not model_path.exists():
        raise FileNotFoundError(
            f"Descriptor model not found at {model_path}. "
            "Download a 128-D face descriptor ONNX model and set FACEFLOW_MODEL_PATH."
        )

    detector = cv2.CascadeClassifier(
        cv2.data.haarcascades + "haarcascade_frontalface_default.xml"
    )
    if detector.empty():
        raise RuntimeError("Haar cascade could not be loaded")

    session = ort.InferenceSession(str(model_path), providers=["CPUExecutionProvider"])
    logger.info("Face models loaded from %s", model_path)
    return FaceModels(detector=detector, session=session)


class ModelLoader:
    """Loads the face models at most once.

    Concurrent callers of load() share a single loading task. A failed load
    is final for this loader: every later call raises the same ModelLoadError.
    """

    def __init__(self, load_fn=load_face_models):
        self._load_fn = load_fn
        self._task = None
        self._models = None
        self._error = None
        self.state = ModelState.UNINITIALIZED

    @property
    def models(self):
        return self._models

    async def load(self):
        if self.state is ModelState.READY:
            return self._models
        if self.state is ModelState.FAILED:
            raise self._error
        if self._task is None:
            self.state = ModelState.LOADING
            self._task = asyncio.ensure_future(self._run())
        return await asyncio.shield(self._task)

    async def _run(self):
        try:
            models = await asyncio.to_thread(self._load_fn)
        except Exception as e:
            logger.error("Face model loading failed: %s", e)
            self.state = ModelState.FAILED
            self._error = ModelLoadError(f"Failed to load face models: {e}")
            raise self._error from e
        self._models = models
        self.state = ModelState.READY
        return models


@dataclass
class Detection:
    """One located face in a frame."""

    engine: "FaceEngine"
    frame: np.ndarray
    bbox: tuple  # (x, y, w, h) in pixels

    async def descriptor(self):
        return await asyncio.to_thread(self.engine.extract_descriptor, self.frame, self.bbox)


class FaceEngine:
    def __init__(self, loader=None, model_path=MODEL_PATH):
        self.loader = loader or ModelLoader(lambda: load_face_models(model_path))

        # Descriptor network preprocessing constants
        self.input_size = INPUT_SIZE
        self.mean = np.array([127.5, 127.5, 127.5], dtype=np.float32)
        self.std = np.array([127.5, 127.5, 127.5], dtype=np.float32)

    @property
    def state(self):
        return self.loader.state

    @property
    def ready(self):
        return self.loader.state is ModelState.READY

    async def load(self):
        return await self.loader.load()

    async def detect_single_face(self, frame):
        """Locate exactly one face, or return None.

        None means: models not ready, empty frame, no face, or several faces
        of similar size.
        """
        if not self.ready or frame is None or frame.size == 0:
            return None
        bbox = await asyncio.to_thread(self.detect_face_bgr, frame)
        if bbox is None:
            return None
        return Detection(engine=self, frame=frame, bbox=bbox)

    def detect_face_bgr(self, bgr):
        """Detect faces in a BGR image and return the unambiguous one as (x, y, w, h)"""
        gray = cv2.cvtColor(bgr, cv2.COLOR_BGR2GRAY)
        faces = self.loader.models.detector.detectMultiScale(
            gray,
            scaleFactor=1.1,
            minNeighbors=5,
            minSize=MIN_FACE_SIZE,
        )
        return pick_single_face(faces)

    def preprocess_image(self, image):
        """Preprocess an RGB face crop for the descriptor network"""
        image = cv2.resize(image, self.input_size, interpolation=cv2.INTER_LINEAR)
        image = (image - self.mean) / self.std

        # HWC to NCHW
        image = np.transpose(image, (2, 0, 1))
        return np.expand_dims(image, axis=0).astype(np.float32)

    def crop_align(self, bgr, bbox):
        """Crop the face with a margin and convert it to RGB"""
        x, y, w, h = bbox
        margin = int(FACE_MARGIN * max(w, h))
        x1 = max(0, x - margin)
        y1 = max(0, y - margin)
        x2 = min(bgr.shape[1], x + w + margin)
        y2 = min(bgr.shape[0], y + h + margin)

        face_img = bgr[y1:y2, x1:x2]
        return cv2.cvtColor(face_img, cv2.COLOR_BGR2RGB)

    def extract_descriptor(self, bgr, bbox):
        """Run the descriptor network and return an L2-normalized float32 vector"""
        session = self.loader.models.session
        processed = self.preprocess_image(self.crop_align(bgr, bbox))

        input_name = session.get_inputs()[0].name
        output_name = session.get_outputs()[0].name
        result = session.run([output_name], {input_name: processed})
        descriptor = np.asarray(result[0][0], dtype=np.float32).ravel()

        if descriptor.shape[0] != DESCRIPTOR_LENGTH:
            raise ValueError(
                f"Model produced a {descriptor.shape[0]}-D descriptor, expected {DESCRIPTOR_LENGTH}"
            )

        norm = np.linalg.norm(descriptor)
        if norm == 0 or not np.isfinite(norm):
            raise ValueError("Model produced a zero or non-finite descriptor")
        return descriptor / norm


def pick_single_face(faces):
    """Choose the one face in a detectMultiScale result, or None if ambiguous."""
    if len(faces) == 0:
        return None

    ranked = sorted(faces, key=lambda f: f[2] * f[3], reverse=True)
    if len(ranked) > 1:
        largest = ranked[0][2] * ranked[0][3]
        runner_up = ranked[1][2] * ranked[1][3]
        if largest < AMBIGUOUS_FACE_RATIO * runner_up:
            return None

    x, y, w, h = ranked[0]
    return (int(x), int(y), int(w), int(h))


def crop_snapshot(frame, bbox, padding=SNAPSHOT_PADDING, size=SNAPSHOT_SIZE):
    """Cut a padded square-resized face snapshot and return it as JPEG bytes.

    Used for display only, never for matching.
    """
    x, y, w, h = bbox
    frame_h, frame_w = frame.shape[:2]
    x1 = max(0, x - padding)
    y1 = max(0, y - padding)
    crop_w = min(frame_w - x1, w + padding * 2)
    crop_h = min(frame_h - y1, h + padding * 2)

    crop = frame[y1:y1 + crop_h, x1:x1 + crop_w]
    snapshot = cv2.resize(crop, (size, size), interpolation=cv2.INTER_LINEAR)
    ok, buf = cv2.imencode(".jpg", snapshot, [cv2.IMWRITE_JPEG_QUALITY, JPEG_QUALITY])
    if not ok:
        raise ValueError("Could not encode snapshot")
    return buf.tobytes()


def to_data_uri(jpeg_bytes):
    return "data:image/jpeg;base64," + base64.b64encode(jpeg_bytes).decode("ascii")


def decode_image(contents):
    """Decode uploaded image bytes to a BGR array, or None if unreadable"""
    if not contents:
        return None
    nparr = np.frombuffer(contents, np.uint8)
    return cv2.imdecode(nparr, cv2.IMREAD_COLOR)

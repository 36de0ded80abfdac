import asyncio
import logging

import cv2

from config import CAMERA_INDEX, FRAME_HEIGHT, FRAME_WIDTH

logger = logging.getLogger(__name__)


class CameraUnavailableError(RuntimeError):
    """The camera could not be opened (missing device or permission denied)."""


class Camera:
    """Exclusive handle on a local video device."""

    def __init__(self, index=CAMERA_INDEX, width=FRAME_WIDTH, height=FRAME_HEIGHT):
        self.index = index
        self.width = width
        self.height = height
        self._capture = None

    @property
    def is_open(self):
        return self._capture is not None

    def open(self):
        capture = cv2.VideoCapture(self.index)
        if not capture.isOpened():
            capture.release()
            raise CameraUnavailableError(
                f"Unable to access camera {self.index}. Check the device and its permissions."
            )
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self._capture = capture
        logger.info("Camera %s opened", self.index)

    async def read(self):
        """Grab one BGR frame, or None if the device returned nothing"""
        if self._capture is None:
            return None
        ok, frame = await asyncio.to_thread(self._capture.read)
        return frame if ok else None

    def release(self):
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info("Camera %s released", self.index)

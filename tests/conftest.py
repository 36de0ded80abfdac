import asyncio
import os
import tempfile
from dataclasses import dataclass

import numpy as np
import pytest

# app.py builds a module-level app on import; keep its data out of the repo
os.environ.setdefault("FACEFLOW_DATA_DIR", tempfile.mkdtemp(prefix="faceflow-test-"))

import descriptor_codec  # noqa: E402
from camera import CameraUnavailableError  # noqa: E402
from config import DESCRIPTOR_LENGTH  # noqa: E402
from face_engine import FaceEngine, ModelLoader  # noqa: E402


def unit(index, scale=1.0):
    vec = np.zeros(DESCRIPTOR_LENGTH, dtype=np.float32)
    vec[index] = scale
    return vec


@dataclass
class Person:
    id: str
    name: str
    descriptor: str = ""


def person(identity_id, vector):
    return Person(id=identity_id, name=identity_id.title(), descriptor=descriptor_codec.encode(vector))


class FakeDetection:
    def __init__(self, result, frame, bbox=(40, 40, 60, 60)):
        self._result = result
        self.frame = frame
        self.bbox = bbox

    async def descriptor(self):
        if isinstance(self._result, Exception):
            raise self._result
        return self._result


class FakeEngine(FaceEngine):
    """FaceEngine whose detector replays a script of results.

    Each script entry is None (no face), a descriptor array, or an exception
    raised from detect_single_face. An exhausted script keeps reporting no face.
    """

    def __init__(self, script=(), load_fn=lambda: None, delay=0.0):
        super().__init__(loader=ModelLoader(load_fn))
        self.script = list(script)
        self.delay = delay
        self.calls = 0
        self.active = 0
        self.max_active = 0

    async def detect_single_face(self, frame):
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.script.pop(0) if self.script else None
        finally:
            self.active -= 1
        if isinstance(result, Exception):
            raise result
        if result is None:
            return None
        return FakeDetection(result, frame)


class FakeCamera:
    def __init__(self, fail=False):
        self.fail = fail
        self.open_count = 0
        self.release_count = 0
        self.frame = np.full((240, 320, 3), 128, dtype=np.uint8)

    def open(self):
        if self.fail:
            raise CameraUnavailableError("Unable to access camera 0")
        self.open_count += 1

    async def read(self):
        return self.frame

    def release(self):
        self.release_count += 1


@pytest.fixture
def camera():
    return FakeCamera()


@pytest.fixture
def frame():
    return np.full((240, 320, 3), 128, dtype=np.uint8)

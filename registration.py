import logging
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np
from pydantic import BaseModel

import descriptor_codec
from blob_store import BlobStoreError
from config import FACES_DIR_NAME
from face_engine import crop_snapshot, to_data_uri
from matcher import best_match

logger = logging.getLogger(__name__)


class NoFaceDetectedError(ValueError):
    """No single face was found in the capture; the user can pose and retry."""


class ContactFields(BaseModel):
    name: str
    email: str
    phone: str = ""


@dataclass
class CapturedFace:
    descriptor: np.ndarray
    snapshot: bytes  # JPEG


@dataclass
class RegistrationResult:
    identity: Any
    snapshot_stored: bool


class RegistrationFlow:
    """Enrolls a new identity from one captured face."""

    def __init__(self, engine, identities, blobs):
        self.engine = engine
        self.identities = identities
        self.blobs = blobs

    async def capture(self, frame) -> CapturedFace:
        detection = await self.engine.detect_single_face(frame)
        if detection is None:
            raise NoFaceDetectedError("No face detected. Please face the camera and try again.")
        descriptor = await detection.descriptor()
        snapshot = crop_snapshot(frame, detection.bbox)
        return CapturedFace(descriptor=descriptor, snapshot=snapshot)

    def find_existing(self, captured: CapturedFace) -> Optional[Any]:
        """Identity already enrolled with this face, if any (informational only)"""
        match = best_match(captured.descriptor, self.identities.list())
        return match.identity if match else None

    def register(self, fields: ContactFields, captured: CapturedFace) -> RegistrationResult:
        identity_id = self.identities.new_id()
        snapshot_stored = True
        try:
            snapshot_url = self.blobs.put(f"{FACES_DIR_NAME}/{identity_id}_thumb.jpg", captured.snapshot)
        except BlobStoreError as e:
            # Keep the record usable: inline the snapshot and report the storage failure
            logger.error("Snapshot upload failed for %s: %s", identity_id, e)
            snapshot_url = to_data_uri(captured.snapshot)
            snapshot_stored = False

        self.identities.create(
            {
                **fields.model_dump(),
                "descriptor": descriptor_codec.encode(captured.descriptor),
                "snapshot_image": snapshot_url,
            },
            identity_id=identity_id,
        )
        identity = self.identities.get(identity_id)
        logger.info("Registered %s (%s)", identity.name, identity.id)
        return RegistrationResult(identity=identity, snapshot_stored=snapshot_stored)

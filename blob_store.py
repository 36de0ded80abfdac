import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class BlobStoreError(RuntimeError):
    pass


@dataclass
class StorageCheck:
    is_configured: bool
    can_upload: bool = False
    can_read: bool = False
    can_delete: bool = False
    error: Optional[str] = None
    location: Optional[str] = None

    def as_dict(self):
        return asdict(self)


class LocalBlobStore:
    """Stores blobs as files under a root directory served at url_prefix."""

    def __init__(self, root, url_prefix="/data"):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")

    def _path(self, name):
        path = (self.root / name).resolve()
        if self.root.resolve() not in path.parents:
            raise BlobStoreError(f"Invalid blob name: {name}")
        return path

    def url_for(self, name):
        return f"{self.url_prefix}/{name}"

    def name_from_url(self, url):
        prefix = self.url_prefix + "/"
        if url and url.startswith(prefix):
            return url[len(prefix):]
        return None

    def put(self, name, data: bytes) -> str:
        path = self._path(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise BlobStoreError(f"Upload failed for {name}: {e}") from e
        return self.url_for(name)

    def get(self, name) -> bytes:
        try:
            return self._path(name).read_bytes()
        except OSError as e:
            raise BlobStoreError(f"Read failed for {name}: {e}") from e

    def delete(self, url_or_name):
        """Remove a blob; missing blobs and foreign URLs (e.g. data URIs) are ignored"""
        if not url_or_name:
            return
        if url_or_name.startswith("data:"):
            return
        if url_or_name.startswith("/"):
            name = self.name_from_url(url_or_name)
            if name is None:
                return
        else:
            name = url_or_name
        try:
            self._path(name).unlink(missing_ok=True)
        except (OSError, BlobStoreError) as e:
            logger.error("Error deleting blob %s: %s", name, e)

    def check(self) -> StorageCheck:
        """Probe upload, read and delete with a throwaway file."""
        location = str(self.root)
        if not self.root.exists():
            return StorageCheck(is_configured=False, error="Storage directory does not exist",
                                location=location)

        name = f"test/storage_check_{int(time.time() * 1000)}.txt"
        content = b"FaceFlow storage test"
        try:
            self.put(name, content)
        except BlobStoreError as e:
            return StorageCheck(is_configured=True, error=str(e), location=location)

        try:
            if self.get(name) != content:
                raise BlobStoreError("Read back different content")
        except BlobStoreError as e:
            return StorageCheck(is_configured=True, can_upload=True, error=str(e), location=location)

        try:
            self._path(name).unlink()
        except OSError as e:
            return StorageCheck(is_configured=True, can_upload=True, can_read=True,
                                error=f"Delete failed: {e}", location=location)

        return StorageCheck(is_configured=True, can_upload=True, can_read=True, can_delete=True,
                            location=location)

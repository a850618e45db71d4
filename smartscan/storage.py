"""Local blob storage for uploaded files."""

from __future__ import annotations

import logging
from pathlib import Path
from uuid import uuid4

from .exceptions import NotFoundError, StoreFailure

logger = logging.getLogger(__name__)


class BlobStore:
    """Store raw uploads on the local filesystem.

    Files are sharded by id: ``<root>/ab/cd/abcd....<suffix>``.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def put(self, data: bytes, suffix: str = "") -> str:
        """Write bytes and return the storage path."""
        blob_id = uuid4().hex
        dest_dir = self.root / blob_id[:2] / blob_id[2:4]
        dest_path = dest_dir / f"{blob_id}{suffix.lower()}"
        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            dest_path.write_bytes(data)
        except OSError as e:
            raise StoreFailure(f"Could not write blob: {e}") from e
        return str(dest_path)

    def get(self, storage_path: str) -> bytes:
        path = self._resolve(storage_path)
        if not path.exists():
            raise NotFoundError(f"Blob not found: {storage_path}")
        return path.read_bytes()

    def exists(self, storage_path: str) -> bool:
        return self._resolve(storage_path).exists()

    def delete(self, storage_path: str) -> None:
        """Remove a blob. A blob that is already gone is not an error."""
        path = self._resolve(storage_path)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StoreFailure(f"Could not delete blob {storage_path}: {e}") from e
        logger.debug("Deleted blob %s", storage_path)

    def _resolve(self, storage_path: str) -> Path:
        path = Path(storage_path).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise NotFoundError(f"Blob outside of store: {storage_path}")
        return path

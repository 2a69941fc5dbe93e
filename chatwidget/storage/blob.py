"""Blob storage for uploaded attachment content."""
from pathlib import Path
from typing import Protocol
import logging

from chatwidget.core.errors import StorageError

logger = logging.getLogger(__name__)


class BlobStorage(Protocol):
    def download(self, path: str) -> bytes: ...


class LocalBlobStorage:
    """Reads blobs from a directory on the local filesystem."""

    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def download(self, path: str) -> bytes:
        """
        Read the blob stored at path (relative to the storage root).

        Raises:
            StorageError: If the path escapes the root, is missing or unreadable
        """
        target = (self.root / path).resolve()
        if self.root not in target.parents:
            raise StorageError(f"Invalid storage path: {path}")
        try:
            return target.read_bytes()
        except OSError as e:
            logger.error(f"Blob download failed for {path}: {str(e)}")
            raise StorageError(f"Failed to read stored file: {path}") from e

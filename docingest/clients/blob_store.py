"""Blob storage for raw uploaded bytes, keyed by content digest.

Directory Structure:
    {root}/
    └── {key[:2]}/          # First 2 chars of the key (sharding)
        └── {key}           # File content, stored once
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class BlobStoreError(Exception):
    """Custom exception for blob storage failures."""

    pass


class BlobNotFoundError(BlobStoreError):
    """Raised when a blob key does not exist."""

    pass


class BlobStore(Protocol):
    """Durable key -> bytes storage."""

    async def put(self, key: str, data: bytes) -> None:
        ...

    async def get(self, key: str) -> bytes:
        ...

    async def delete(self, key: str) -> None:
        ...


class LocalBlobStore:
    """Blob store on the local filesystem.

    Writes go to a temporary file in the shard directory and are renamed
    into place, so readers never see a partially written blob. Writing the
    same key twice with the same bytes is harmless.
    """

    def __init__(self, root: str | Path):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, key: str) -> Path:
        """Get the sharded path for a blob key."""
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise BlobStoreError(f"Invalid blob key: {key!r}")
        return self._root / key[:2] / key

    def _write(self, key: str, data: bytes) -> None:
        target = self.path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _read(self, key: str) -> bytes:
        path = self.path_for(key)
        if not path.exists():
            raise BlobNotFoundError(f"Blob not found: {key}")
        return path.read_bytes()

    def _remove(self, key: str) -> None:
        path = self.path_for(key)
        if path.exists():
            path.unlink()

    async def put(self, key: str, data: bytes) -> None:
        try:
            await asyncio.to_thread(self._write, key, data)
        except OSError as e:
            raise BlobStoreError(f"Failed to write blob {key}: {e}") from e
        logger.debug(f"Stored blob {key[:16]}... ({len(data)} bytes)")

    async def get(self, key: str) -> bytes:
        try:
            return await asyncio.to_thread(self._read, key)
        except BlobStoreError:
            raise
        except OSError as e:
            raise BlobStoreError(f"Failed to read blob {key}: {e}") from e

    async def delete(self, key: str) -> None:
        """Delete a blob. Deleting a missing blob is not an error."""
        try:
            await asyncio.to_thread(self._remove, key)
        except OSError as e:
            raise BlobStoreError(f"Failed to delete blob {key}: {e}") from e

"""Content hashing and file type helpers."""

import hashlib
import mimetypes
from typing import Optional

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def compute_content_hash(data: bytes) -> str:
    """Compute the SHA-256 hash of raw file content for deduplication.

    Args:
        data: Raw file bytes.

    Returns:
        SHA-256 hash as a 64-character hexadecimal string.
    """
    return hashlib.sha256(data).hexdigest()


def resolve_content_type(filename: str, file_type: Optional[str] = None) -> str:
    """Normalize a declared file type to a MIME type.

    Accepts a MIME type ("image/png"), a bare extension ("png" or ".png"),
    or nothing, in which case the type is guessed from the filename.
    """
    if file_type:
        declared = file_type.strip().lower()
        if "/" in declared:
            return declared.split(";", 1)[0].strip()
        extension = declared if declared.startswith(".") else f".{declared}"
        guessed = mimetypes.types_map.get(extension)
        if guessed:
            return guessed

    guessed, _ = mimetypes.guess_type(filename)
    return guessed or DEFAULT_CONTENT_TYPE

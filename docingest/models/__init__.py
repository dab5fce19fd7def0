"""Data models module."""

from docingest.models.attachment import (
    Attachment,
    AttachmentStatus,
    DuplicateConflict,
    IngestResult,
    normalize_tags,
)
from docingest.models.content_record import ContentRecord, ParseStatus

__all__ = [
    "Attachment",
    "AttachmentStatus",
    "ContentRecord",
    "DuplicateConflict",
    "IngestResult",
    "ParseStatus",
    "normalize_tags",
]

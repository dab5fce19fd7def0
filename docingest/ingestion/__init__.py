"""Document ingestion module."""

from docingest.ingestion.coordinator import (
    AttachmentCreateFailed,
    IngestionCoordinator,
    IngestionError,
    StorageWriteFailed,
    create_ingestion_coordinator,
)
from docingest.ingestion.hashing import compute_content_hash, resolve_content_type

__all__ = [
    "AttachmentCreateFailed",
    "IngestionCoordinator",
    "IngestionError",
    "StorageWriteFailed",
    "compute_content_hash",
    "create_ingestion_coordinator",
    "resolve_content_type",
]

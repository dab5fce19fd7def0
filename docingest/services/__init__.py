"""Pipeline services: content store, attachments and parse orchestration."""

from docingest.services.attachment_service import AttachmentNotFoundError, AttachmentService
from docingest.services.content_store import (
    ContentNotFoundError,
    ContentStore,
    InvalidStatusTransitionError,
)
from docingest.services.parse_orchestrator import ParseOrchestrator, matches_content_type

__all__ = [
    "AttachmentNotFoundError",
    "AttachmentService",
    "ContentNotFoundError",
    "ContentStore",
    "InvalidStatusTransitionError",
    "ParseOrchestrator",
    "matches_content_type",
]

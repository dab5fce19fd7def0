"""Content record model: one row per unique byte sequence."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class ParseStatus(str, Enum):
    """Lifecycle of text extraction for a piece of content."""

    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self is not ParseStatus.PENDING


@dataclass(frozen=True)
class ContentRecord:
    """Represents a unique piece of stored content, keyed by its digest.

    Shared by every attachment that uploaded the same bytes.
    """

    digest: str  # SHA-256 hex of the raw bytes
    blob_key: str  # Key in the blob store
    byte_size: int  # Original size in bytes
    content_type: str  # MIME type declared on first upload
    parse_status: ParseStatus
    parsed_text: Optional[str]  # Extracted text, None until ready
    created_at: datetime
    updated_at: datetime

    def to_document(self) -> Dict[str, Any]:
        return {
            "digest": self.digest,
            "blob_key": self.blob_key,
            "byte_size": self.byte_size,
            "content_type": self.content_type,
            "parse_status": self.parse_status.value,
            "parsed_text": self.parsed_text,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "ContentRecord":
        return cls(
            digest=document["digest"],
            blob_key=document["blob_key"],
            byte_size=int(document["byte_size"]),
            content_type=document["content_type"],
            parse_status=ParseStatus(document["parse_status"]),
            parsed_text=document.get("parsed_text"),
            created_at=datetime.fromisoformat(document["created_at"]),
            updated_at=datetime.fromisoformat(document["updated_at"]),
        )

"""Attachment models: a named, per-container use of a content record."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from docingest.models.content_record import ContentRecord, ParseStatus


def normalize_tags(tags: Iterable[str]) -> Tuple[str, ...]:
    """Strip whitespace, drop empty tags and duplicates, keep first-seen order."""
    seen = []
    for tag in tags:
        cleaned = tag.strip()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return tuple(seen)


@dataclass(frozen=True)
class Attachment:
    """Represents one file attached to a container (e.g. a report).

    Many attachments may reference the same digest; removing one never
    touches the shared content record.
    """

    id: str
    container_id: str
    digest: str
    display_name: str
    notes: str
    tags: Tuple[str, ...]
    created_at: datetime
    updated_at: datetime
    removed_at: Optional[datetime] = None  # Soft delete timestamp

    @property
    def is_active(self) -> bool:
        return self.removed_at is None

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "container_id": self.container_id,
            "digest": self.digest,
            "display_name": self.display_name,
            "notes": self.notes,
            "tags": list(self.tags),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "removed_at": self.removed_at.isoformat() if self.removed_at else None,
            "active": self.is_active,
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Attachment":
        removed_at = document.get("removed_at")
        return cls(
            id=document["id"],
            container_id=document["container_id"],
            digest=document["digest"],
            display_name=document["display_name"],
            notes=document.get("notes", ""),
            tags=tuple(document.get("tags", [])),
            created_at=datetime.fromisoformat(document["created_at"]),
            updated_at=datetime.fromisoformat(document["updated_at"]),
            removed_at=datetime.fromisoformat(removed_at) if removed_at else None,
        )


@dataclass(frozen=True)
class AttachmentStatus:
    """Polling view of an attachment's parse progress."""

    attachment_id: str
    digest: str
    parse_status: ParseStatus
    parsed_text: Optional[str]


@dataclass(frozen=True)
class IngestResult:
    """Successful ingestion: the attachment is usable immediately."""

    attachment: Attachment
    content: ContentRecord
    is_new_content: bool  # True if this call stored the bytes for the first time

    @property
    def parse_status(self) -> ParseStatus:
        return self.content.parse_status


@dataclass(frozen=True)
class DuplicateConflict:
    """The container already holds an active attachment for these bytes.

    Not an error: the caller may retry with force_on_duplicate=True.
    """

    existing_attachment: Attachment

    @property
    def existing_attachment_id(self) -> str:
        return self.existing_attachment.id

"""Content store: the content-addressed index behind deduplication.

Maps a content digest to its blob location, parse status and parsed text.
Guarantees:
- At most one record per digest (atomic create in the metadata store)
- Blob first, record second: a failed blob write leaves no record behind
- Parse results only move a record out of ``pending``, never back
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple

from docingest.clients.metadata_store import MetadataStore, with_timeout
from docingest.models import ContentRecord, ParseStatus

logger = logging.getLogger(__name__)

CONTENT_COLLECTION = "contents"


class ContentNotFoundError(Exception):
    """Raised when no content record exists for a digest."""

    pass


class InvalidStatusTransitionError(Exception):
    """Raised when a parse result would move a record out of a terminal state."""

    pass


class _KeyedLocks:
    """asyncio locks handed out per key and dropped once nobody holds them."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]
                del self._locks[key]


class ContentStore:
    """Store for deduplicated content records."""

    def __init__(
        self,
        metadata_store: MetadataStore,
        max_text_length: int = 200_000,
        operation_timeout: Optional[float] = None,
    ):
        """Initialize the content store.

        Args:
            metadata_store: Backend holding the records.
            max_text_length: Parsed text beyond this many characters is truncated.
            operation_timeout: Per-call timeout for metadata operations, in seconds.
        """
        self._metadata_store = metadata_store
        self._max_text_length = max_text_length
        self._timeout = operation_timeout
        self._creating = _KeyedLocks()

    @property
    def max_text_length(self) -> int:
        return self._max_text_length

    async def get_by_digest(self, digest: str) -> Optional[ContentRecord]:
        """Get a content record by digest, or None if the bytes were never stored."""
        document = await with_timeout(
            self._metadata_store.get(CONTENT_COLLECTION, digest),
            self._timeout,
            f"get content {digest[:16]}",
        )
        if document is None:
            return None
        return ContentRecord.from_document(document)

    async def create_if_absent(
        self,
        digest: str,
        blob_key: str,
        byte_size: int,
        content_type: str,
    ) -> Tuple[ContentRecord, bool]:
        """Atomically create a pending record unless one exists for the digest.

        Returns:
            Tuple of (record, was_created). A caller losing a creation race gets
            the winner's record with was_created=False.
        """
        now = datetime.now(timezone.utc)
        candidate = ContentRecord(
            digest=digest,
            blob_key=blob_key,
            byte_size=byte_size,
            content_type=content_type,
            parse_status=ParseStatus.PENDING,
            parsed_text=None,
            created_at=now,
            updated_at=now,
        )

        document, created = await with_timeout(
            self._metadata_store.create_if_absent(CONTENT_COLLECTION, digest, candidate.to_document()),
            self._timeout,
            f"create content {digest[:16]}",
        )

        if created:
            logger.info(f"Registered new content: {digest[:16]}... ({byte_size} bytes, {content_type})")
            return candidate, True

        logger.debug(f"Content already registered: {digest[:16]}...")
        return ContentRecord.from_document(document), False

    async def ensure_content(
        self,
        digest: str,
        byte_size: int,
        content_type: str,
        write_blob: Callable[[], Awaitable[str]],
    ) -> Tuple[ContentRecord, bool]:
        """Return the record for a digest, storing the bytes first if they are new.

        Args:
            digest: Content digest.
            byte_size: Size of the raw bytes.
            content_type: Declared MIME type.
            write_blob: Coroutine factory that persists the bytes and returns the blob key.
                Only called when the digest has no record yet.

        Returns:
            Tuple of (record, was_created).

        Raises:
            Whatever write_blob raises; no record is created in that case.
        """
        existing = await self.get_by_digest(digest)
        if existing is not None:
            return existing, False

        # Concurrent first uploads of the same bytes in this process share one blob write
        async with self._creating.hold(digest):
            existing = await self.get_by_digest(digest)
            if existing is not None:
                return existing, False

            blob_key = await write_blob()
            return await self.create_if_absent(digest, blob_key, byte_size, content_type)

    async def update_parse_result(
        self,
        digest: str,
        status: ParseStatus,
        parsed_text: Optional[str] = None,
    ) -> ContentRecord:
        """Record the outcome of parsing.

        Transitions pending -> ready/failed/skipped. Text for a ready record is
        truncated to the configured maximum; failed and skipped records store no text.

        Raises:
            ContentNotFoundError: If the digest is unknown.
            InvalidStatusTransitionError: If the record is not pending or status is pending.
        """
        record = await self.get_by_digest(digest)
        if record is None:
            raise ContentNotFoundError(f"Content {digest} not found for parse update")

        if status is ParseStatus.PENDING or record.parse_status is not ParseStatus.PENDING:
            raise InvalidStatusTransitionError(
                f"Cannot move content {digest[:16]}... from {record.parse_status.value} to {status.value}"
            )

        text = None
        if status is ParseStatus.READY:
            text = parsed_text or ""
            if len(text) > self._max_text_length:
                logger.warning(
                    f"Parsed text for {digest[:16]}... truncated from {len(text)} "
                    f"to {self._max_text_length} characters"
                )
                text = text[: self._max_text_length]

        updated = replace(
            record,
            parse_status=status,
            parsed_text=text,
            updated_at=datetime.now(timezone.utc),
        )
        await with_timeout(
            self._metadata_store.put(CONTENT_COLLECTION, digest, updated.to_document()),
            self._timeout,
            f"update content {digest[:16]}",
        )

        logger.info(f"Content {digest[:16]}... is now {status.value}")
        return updated

"""Ingestion coordinator: the entry point the web layer calls.

Flow for one upload:
- Hash the bytes
- Store the blob and register the content, only if the digest is new
- Attach the content to the container (duplicate check per container)
- Kick off parsing in the background for content that is still pending
- Return the attachment immediately; callers poll for the parse outcome
"""

import asyncio
import logging
from typing import Iterable, List, Optional, Union

from docingest.clients.blob_store import BlobStore, BlobStoreError, LocalBlobStore
from docingest.clients.cosmosdb_client import CosmosDBClient
from docingest.clients.document_intelligence_client import DocumentIntelligenceParseService
from docingest.clients.metadata_store import (
    CosmosMetadataStore,
    MetadataStore,
    MetadataStoreError,
    SqliteMetadataStore,
)
from docingest.clients.parse_service import ParseService
from docingest.config.configuration import AppConfig, get_config
from docingest.ingestion.hashing import compute_content_hash, resolve_content_type
from docingest.models import (
    Attachment,
    AttachmentStatus,
    ContentRecord,
    DuplicateConflict,
    IngestResult,
    ParseStatus,
)
from docingest.services.attachment_service import AttachmentService
from docingest.services.content_store import ContentNotFoundError, ContentStore
from docingest.services.parse_orchestrator import ParseOrchestrator

logger = logging.getLogger(__name__)


class IngestionError(Exception):
    """Base exception for ingestion failures surfaced to the caller."""

    pass


class StorageWriteFailed(IngestionError):
    """The bytes or their content record could not be stored. Nothing was attached."""

    pass


class AttachmentCreateFailed(IngestionError):
    """Content is stored but the attachment could not be written. Safe to retry."""

    pass


class IngestionCoordinator:
    """Façade over hashing, content dedup, attachments and parse orchestration."""

    def __init__(
        self,
        blob_store: BlobStore,
        content_store: ContentStore,
        attachment_service: AttachmentService,
        orchestrator: ParseOrchestrator,
        blob_timeout: Optional[float] = None,
        owned_resources: Iterable = (),
    ):
        """Initialize the coordinator.

        Args:
            blob_store: Durable storage for raw bytes.
            content_store: Deduplicated content records.
            attachment_service: Per-container attachments.
            orchestrator: Background parse runner.
            blob_timeout: Timeout for a single blob operation, in seconds.
            owned_resources: Objects with an async close() released by close().
        """
        self._blob_store = blob_store
        self._content_store = content_store
        self._attachments = attachment_service
        self._orchestrator = orchestrator
        self._blob_timeout = blob_timeout
        self._owned_resources = list(owned_resources)

    @property
    def orchestrator(self) -> ParseOrchestrator:
        return self._orchestrator

    async def _write_blob(self, digest: str, data: bytes) -> str:
        try:
            await asyncio.wait_for(self._blob_store.put(digest, data), self._blob_timeout)
        except asyncio.TimeoutError as e:
            raise BlobStoreError(f"Blob write for {digest[:16]}... timed out after {self._blob_timeout}s") from e
        return digest

    async def ingest(
        self,
        container_id: str,
        filename: str,
        data: bytes,
        file_type: Optional[str] = None,
        force_on_duplicate: bool = False,
    ) -> Union[IngestResult, DuplicateConflict]:
        """
        Ingest an uploaded file into a container.

        Args:
            container_id: Owning container (e.g. report id).
            filename: Original filename, used as the display name.
            data: Raw file bytes.
            file_type: Declared MIME type or extension; guessed from filename if omitted.
            force_on_duplicate: Attach even if the container already holds these bytes.

        Returns:
            IngestResult with the new attachment and current content state, or
            DuplicateConflict referencing the existing attachment.

        Raises:
            ValueError: If container_id or filename is empty.
            StorageWriteFailed: If the blob or content record could not be written.
            AttachmentCreateFailed: If the attachment could not be written.
        """
        if not container_id:
            raise ValueError("container_id is required")
        if not filename or not filename.strip():
            raise ValueError("filename is required")

        digest = compute_content_hash(data)
        content_type = resolve_content_type(filename, file_type)
        logger.info(f"Ingesting {filename} into {container_id} ({len(data)} bytes, digest {digest[:16]}...)")

        try:
            content, is_new = await self._content_store.ensure_content(
                digest,
                byte_size=len(data),
                content_type=content_type,
                write_blob=lambda: self._write_blob(digest, data),
            )
        except (BlobStoreError, MetadataStoreError) as e:
            raise StorageWriteFailed(f"Failed to store {filename}: {e}") from e

        try:
            attachment, duplicate = await self._attachments.attach(
                container_id, digest, filename.strip(), force=force_on_duplicate
            )
        except MetadataStoreError as e:
            raise AttachmentCreateFailed(f"Failed to attach {filename} to {container_id}: {e}") from e

        if duplicate:
            return DuplicateConflict(existing_attachment=attachment)

        if content.parse_status is ParseStatus.PENDING:
            self._orchestrator.schedule(digest)

        return IngestResult(attachment=attachment, content=content, is_new_content=is_new)

    async def _content_for(self, attachment: Attachment) -> ContentRecord:
        content = await self._content_store.get_by_digest(attachment.digest)
        if content is None:
            raise ContentNotFoundError(
                f"Content {attachment.digest} referenced by attachment {attachment.id} is missing"
            )
        return content

    async def get_attachment(self, attachment_id: str) -> Attachment:
        return await self._attachments.get(attachment_id)

    async def get_attachment_status(self, attachment_id: str) -> AttachmentStatus:
        """Get the parse status (and text, once ready) for an attachment."""
        attachment = await self._attachments.get(attachment_id)
        content = await self._content_for(attachment)
        return AttachmentStatus(
            attachment_id=attachment.id,
            digest=attachment.digest,
            parse_status=content.parse_status,
            parsed_text=content.parsed_text,
        )

    async def get_attachment_content(self, attachment_id: str) -> bytes:
        """Get the raw bytes of an attachment, whatever its parse status."""
        attachment = await self._attachments.get(attachment_id)
        content = await self._content_for(attachment)
        return await self._blob_store.get(content.blob_key)

    async def list_attachments(self, container_id: str, include_removed: bool = False) -> List[Attachment]:
        return await self._attachments.list_by_container(container_id, include_removed=include_removed)

    async def update_attachment_metadata(
        self,
        attachment_id: str,
        display_name: Optional[str] = None,
        notes: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> Attachment:
        return await self._attachments.update_metadata(
            attachment_id, display_name=display_name, notes=notes, tags=tags
        )

    async def remove_attachment(self, attachment_id: str) -> Attachment:
        return await self._attachments.remove(attachment_id)

    async def restore_attachment(self, attachment_id: str) -> Union[Attachment, DuplicateConflict]:
        attachment, duplicate = await self._attachments.restore(attachment_id)
        if duplicate:
            return DuplicateConflict(existing_attachment=attachment)
        return attachment

    async def search_attachments(self, container_id: str, query: str) -> List[Attachment]:
        """Find active attachments whose name, notes or parsed text contain the query.

        Case-insensitive substring match, newest first. No ranking.
        """
        needle = query.strip().lower()
        attachments = await self._attachments.list_by_container(container_id)
        if not needle:
            return attachments

        matches = []
        texts = {}
        for attachment in attachments:
            if needle in attachment.display_name.lower() or needle in attachment.notes.lower():
                matches.append(attachment)
                continue
            if attachment.digest not in texts:
                content = await self._content_store.get_by_digest(attachment.digest)
                texts[attachment.digest] = (content.parsed_text or "").lower() if content else ""
            if needle in texts[attachment.digest]:
                matches.append(attachment)
        return matches

    async def close(self) -> None:
        """Wait for running parse jobs, then release owned clients."""
        await self._orchestrator.drain()
        for resource in self._owned_resources:
            await resource.close()


# --- Factory Functions ---


async def _create_metadata_store(config: AppConfig) -> MetadataStore:
    """Create the metadata store selected by storage.metadata_backend."""
    if config.storage.metadata_backend == "cosmosdb":
        cosmos = config.cosmosdb
        client = CosmosDBClient(
            endpoint=cosmos.endpoint,
            key=cosmos.key,
            database_name=cosmos.database_name,
            container_name=cosmos.container_name,
            partition_key_path=cosmos.partition_key_path,
        )
        await client.connect()
        return CosmosMetadataStore(client)
    return SqliteMetadataStore(config.storage.sqlite_path)


def _create_parse_service(config: AppConfig) -> Optional[DocumentIntelligenceParseService]:
    """Create the parse service, or None when parsing is disabled."""
    if config.parser.backend == "disabled":
        return None
    return DocumentIntelligenceParseService(config.document_intelligence)


async def create_ingestion_coordinator(
    config: Optional[AppConfig] = None,
    parse_service: Optional[ParseService] = None,
) -> IngestionCoordinator:
    """
    Wire up an IngestionCoordinator from configuration.

    Args:
        config: Application configuration; loaded via get_config() if omitted.
        parse_service: Override for the configured parse service.

    Returns:
        A ready-to-use coordinator. Call close() on shutdown.
    """
    config = config or get_config()

    metadata_store = await _create_metadata_store(config)
    blob_store = LocalBlobStore(config.storage.blob_path)
    owned = [metadata_store]

    if parse_service is None:
        parse_service = _create_parse_service(config)
        if parse_service is not None:
            owned.append(parse_service)

    timeout = config.storage.metadata_timeout_seconds
    content_store = ContentStore(
        metadata_store,
        max_text_length=config.parser.max_text_length,
        operation_timeout=timeout,
    )
    orchestrator = ParseOrchestrator(content_store, blob_store, parse_service, config.parser)

    logger.info(
        f"Ingestion coordinator ready (metadata: {config.storage.metadata_backend}, "
        f"parser: {config.parser.backend}, blobs: {config.storage.blob_path})"
    )
    return IngestionCoordinator(
        blob_store=blob_store,
        content_store=content_store,
        attachment_service=AttachmentService(metadata_store, operation_timeout=timeout),
        orchestrator=orchestrator,
        blob_timeout=config.storage.blob_timeout_seconds,
        owned_resources=owned,
    )

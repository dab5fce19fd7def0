"""Attachment service: per-container references to stored content.

Each container may hold at most one active attachment per digest unless the
caller forces a duplicate. The rule is enforced with a claim document keyed
``{container_id}:{digest}`` created through the metadata store's atomic
create-if-absent, so concurrent uploads of the same file into the same
container cannot both win.
"""

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from docingest.clients.metadata_store import MetadataStore, with_timeout
from docingest.models import Attachment, normalize_tags

logger = logging.getLogger(__name__)

ATTACHMENT_COLLECTION = "attachments"
CLAIM_COLLECTION = "attachment_claims"


class AttachmentNotFoundError(Exception):
    """Raised when an attachment id does not exist."""

    pass


def _claim_key(container_id: str, digest: str) -> str:
    return f"{container_id}:{digest}"


class AttachmentService:
    """Service for creating, editing and removing attachments."""

    def __init__(self, metadata_store: MetadataStore, operation_timeout: Optional[float] = None):
        """Initialize the attachment service.

        Args:
            metadata_store: Backend holding attachments and container claims.
            operation_timeout: Per-call timeout for metadata operations, in seconds.
        """
        self._metadata_store = metadata_store
        self._timeout = operation_timeout

    async def _call(self, awaitable, operation: str):
        return await with_timeout(awaitable, self._timeout, operation)

    async def _save(self, attachment: Attachment) -> None:
        await self._call(
            self._metadata_store.put(ATTACHMENT_COLLECTION, attachment.id, attachment.to_document()),
            f"save attachment {attachment.id}",
        )

    async def _get_optional(self, attachment_id: str) -> Optional[Attachment]:
        document = await self._call(
            self._metadata_store.get(ATTACHMENT_COLLECTION, attachment_id),
            f"get attachment {attachment_id}",
        )
        return Attachment.from_document(document) if document else None

    def _claim_document(self, attachment: Attachment) -> Dict[str, Any]:
        return {
            "attachment_id": attachment.id,
            "container_id": attachment.container_id,
            "digest": attachment.digest,
        }

    async def _claim(self, attachment: Attachment) -> Tuple[Dict[str, Any], bool]:
        return await self._call(
            self._metadata_store.create_if_absent(
                CLAIM_COLLECTION,
                _claim_key(attachment.container_id, attachment.digest),
                self._claim_document(attachment),
            ),
            f"claim {attachment.container_id}/{attachment.digest[:16]}",
        )

    async def _set_claim(self, attachment: Attachment) -> None:
        await self._call(
            self._metadata_store.put(
                CLAIM_COLLECTION,
                _claim_key(attachment.container_id, attachment.digest),
                self._claim_document(attachment),
            ),
            f"set claim {attachment.container_id}/{attachment.digest[:16]}",
        )

    async def _claim_holder(self, container_id: str, digest: str) -> Optional[Attachment]:
        key = _claim_key(container_id, digest)
        claim = await self._call(self._metadata_store.get(CLAIM_COLLECTION, key), f"get claim {key}")
        if claim is None:
            return None
        holder = await self._get_optional(claim["attachment_id"])
        return holder if holder is not None and holder.is_active else None

    async def get(self, attachment_id: str) -> Attachment:
        """Get an attachment by id, including removed ones.

        Raises:
            AttachmentNotFoundError: If no attachment has this id.
        """
        attachment = await self._get_optional(attachment_id)
        if attachment is None:
            raise AttachmentNotFoundError(f"Attachment {attachment_id} not found")
        return attachment

    async def attach(
        self,
        container_id: str,
        digest: str,
        display_name: str,
        force: bool = False,
    ) -> Tuple[Attachment, bool]:
        """Attach content to a container.

        Args:
            container_id: Owning container (e.g. report id).
            digest: Digest of an existing content record.
            display_name: User-visible filename.
            force: Create a second active attachment even if one exists.

        Returns:
            Tuple of (attachment, duplicate). With duplicate=True the returned
            attachment is the existing one and nothing was written.
        """
        now = datetime.now(timezone.utc)
        candidate = Attachment(
            id=str(uuid.uuid4()),
            container_id=container_id,
            digest=digest,
            display_name=display_name,
            notes="",
            tags=(),
            created_at=now,
            updated_at=now,
        )

        holder = await self._claim_holder(container_id, digest)
        if holder is not None:
            if not force:
                logger.info(f"Duplicate upload in {container_id}: {digest[:16]}... already attached as {holder.id}")
                return holder, True
            await self._save(candidate)
            logger.info(
                f"Created forced duplicate attachment {candidate.id} in {container_id} (existing: {holder.id})"
            )
            return candidate, False

        # The row goes in before the claim so a claim always points at a real attachment
        await self._save(candidate)
        try:
            return await self._claim_or_yield(candidate, force)
        except Exception:
            await self._discard(candidate)
            raise

    async def _discard(self, attachment: Attachment) -> None:
        """Drop an unclaimed candidate row after a failed claim."""
        try:
            await self._call(
                self._metadata_store.delete(ATTACHMENT_COLLECTION, attachment.id),
                f"discard attachment {attachment.id}",
            )
        except Exception:
            logger.exception(f"Could not discard unclaimed attachment {attachment.id}")

    async def _claim_or_yield(self, candidate: Attachment, force: bool) -> Tuple[Attachment, bool]:
        container_id, digest = candidate.container_id, candidate.digest
        claim, claimed = await self._claim(candidate)
        if claimed:
            logger.info(f"Created attachment {candidate.id} in {container_id} for {digest[:16]}...")
            return candidate, False

        holder = await self._get_optional(claim["attachment_id"])
        if holder is not None and holder.is_active:
            if force:
                logger.info(
                    f"Created forced duplicate attachment {candidate.id} in {container_id} "
                    f"(existing: {holder.id})"
                )
                return candidate, False

            await self._discard(candidate)
            logger.info(f"Duplicate upload in {container_id}: {digest[:16]}... already attached as {holder.id}")
            return holder, True

        # Claim left behind by an attachment that is gone or removed
        logger.warning(f"Replacing stale claim for {container_id}/{digest[:16]}...")
        await self._set_claim(candidate)
        logger.info(f"Created attachment {candidate.id} in {container_id} for {digest[:16]}...")
        return candidate, False

    async def find_active(self, container_id: str, digest: str) -> Optional[Attachment]:
        """Get the oldest active attachment for a digest in a container."""
        documents = await self._call(
            self._metadata_store.query(
                ATTACHMENT_COLLECTION, container_id=container_id, digest=digest, active=True
            ),
            f"find {container_id}/{digest[:16]}",
        )
        attachments = sorted((Attachment.from_document(d) for d in documents), key=lambda a: a.created_at)
        return attachments[0] if attachments else None

    async def update_metadata(
        self,
        attachment_id: str,
        display_name: Optional[str] = None,
        notes: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> Attachment:
        """Partially update user-editable fields. None leaves a field unchanged.

        Raises:
            AttachmentNotFoundError: If no attachment has this id.
            ValueError: If display_name is blank.
        """
        attachment = await self.get(attachment_id)

        changes: Dict[str, Any] = {}
        if display_name is not None:
            if not display_name.strip():
                raise ValueError("display_name must not be blank")
            changes["display_name"] = display_name.strip()
        if notes is not None:
            changes["notes"] = notes
        if tags is not None:
            changes["tags"] = normalize_tags(tags)

        if not changes:
            return attachment

        updated = replace(attachment, updated_at=datetime.now(timezone.utc), **changes)
        await self._save(updated)
        logger.info(f"Updated attachment {attachment_id}: {', '.join(sorted(changes))}")
        return updated

    async def remove(self, attachment_id: str) -> Attachment:
        """Soft-delete an attachment. The content record is left untouched.

        Removing an already removed attachment is a no-op.
        """
        attachment = await self.get(attachment_id)
        if not attachment.is_active:
            return attachment

        now = datetime.now(timezone.utc)
        removed = replace(attachment, removed_at=now, updated_at=now)
        await self._save(removed)

        key = _claim_key(attachment.container_id, attachment.digest)
        claim = await self._call(self._metadata_store.get(CLAIM_COLLECTION, key), f"get claim {key}")
        if claim is not None and claim["attachment_id"] == attachment.id:
            successor = await self.find_active(attachment.container_id, attachment.digest)
            if successor is not None:
                await self._set_claim(successor)
            else:
                await self._call(self._metadata_store.delete(CLAIM_COLLECTION, key), f"release claim {key}")

        logger.info(f"Removed attachment {attachment_id} from {attachment.container_id}")
        return removed

    async def restore(self, attachment_id: str) -> Tuple[Attachment, bool]:
        """Bring back a removed attachment.

        Returns:
            Tuple of (attachment, duplicate). If the container meanwhile holds
            another active attachment for the same digest, that one is returned
            with duplicate=True and nothing is changed.
        """
        attachment = await self.get(attachment_id)
        if attachment.is_active:
            return attachment, False

        claim, claimed = await self._claim(attachment)
        if not claimed and claim["attachment_id"] != attachment.id:
            holder = await self._get_optional(claim["attachment_id"])
            if holder is not None and holder.is_active:
                return holder, True
            await self._set_claim(attachment)

        restored = replace(attachment, removed_at=None, updated_at=datetime.now(timezone.utc))
        await self._save(restored)
        logger.info(f"Restored attachment {attachment_id} in {attachment.container_id}")
        return restored, False

    async def list_by_container(self, container_id: str, include_removed: bool = False) -> List[Attachment]:
        """List a container's attachments, newest first."""
        filters: Dict[str, Any] = {"container_id": container_id}
        if not include_removed:
            filters["active"] = True

        documents = await self._call(
            self._metadata_store.query(ATTACHMENT_COLLECTION, **filters),
            f"list {container_id}",
        )
        attachments = [Attachment.from_document(d) for d in documents]
        return sorted(attachments, key=lambda a: a.created_at, reverse=True)

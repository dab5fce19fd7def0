"""Parse orchestrator: drives text extraction for newly stored content.

One background task per digest submits the bytes to the parse service,
polls on a fixed interval with a bounded number of attempts, and records
the outcome on the content record. Failures end in ``failed`` status and
are never raised to the uploader.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, FrozenSet, Optional, TypeVar

from docingest.clients.blob_store import BlobStore, BlobStoreError
from docingest.clients.parse_service import (
    JobStatus,
    ParseService,
    ParseServiceError,
    ParseServiceUnavailable,
)
from docingest.config.configuration import ParserConfig
from docingest.models import ParseStatus
from docingest.services.content_store import ContentStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def matches_content_type(content_type: str, patterns) -> bool:
    """Check a MIME type against exact types and 'type/*' wildcards."""
    content_type = content_type.lower()
    major = content_type.split("/", 1)[0]
    for pattern in patterns:
        if pattern == content_type or pattern == f"{major}/*":
            return True
    return False


class ParseOrchestrator:
    """Schedules and runs parse jobs, at most one in flight per digest."""

    def __init__(
        self,
        content_store: ContentStore,
        blob_store: BlobStore,
        parse_service: Optional[ParseService],
        settings: ParserConfig,
    ):
        """Initialize the orchestrator.

        Args:
            content_store: Store whose records are transitioned.
            blob_store: Source of the raw bytes to submit.
            parse_service: External parser; None disables parsing and every
                record is marked skipped.
            settings: Polling, retry and truncation settings.
        """
        self._content_store = content_store
        self._blob_store = blob_store
        self._parse_service = parse_service
        self._settings = settings
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> FrozenSet[str]:
        """Digests with a parse run currently in progress."""
        return frozenset(self._tasks)

    def is_parseable(self, content_type: str) -> bool:
        if self._parse_service is None:
            return False
        return not matches_content_type(content_type, self._settings.non_parseable_types)

    def schedule(self, digest: str) -> asyncio.Task:
        """Start a background parse run for a digest unless one is already running.

        Must be called from within a running event loop.
        """
        task = self._tasks.get(digest)
        if task is not None and not task.done():
            logger.debug(f"Parse already in flight for {digest[:16]}...")
            return task

        task = asyncio.get_running_loop().create_task(
            self._run_logged(digest), name=f"parse-{digest[:12]}"
        )
        self._tasks[digest] = task
        task.add_done_callback(lambda finished: self._forget(digest, finished))
        return task

    def _forget(self, digest: str, task: asyncio.Task) -> None:
        if self._tasks.get(digest) is task:
            del self._tasks[digest]

    async def drain(self) -> None:
        """Wait until every scheduled parse run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def _run_logged(self, digest: str) -> Optional[ParseStatus]:
        try:
            return await self.run(digest)
        except Exception:
            logger.exception(f"Parse run for {digest[:16]}... crashed, marking failed")
            try:
                await self._content_store.update_parse_result(digest, ParseStatus.FAILED)
            except Exception:
                logger.exception(f"Could not record failure for {digest[:16]}..., left pending")
                return None
            return ParseStatus.FAILED

    async def run(self, digest: str) -> Optional[ParseStatus]:
        """Take one pending content record to a terminal status.

        Returns:
            The resulting status, the existing status if the record was no
            longer pending, or None if the digest is unknown.
        """
        record = await self._content_store.get_by_digest(digest)
        if record is None:
            logger.warning(f"Parse requested for unknown content {digest[:16]}...")
            return None
        if record.parse_status.is_terminal:
            logger.debug(f"Content {digest[:16]}... already {record.parse_status.value}, nothing to parse")
            return record.parse_status

        if not self.is_parseable(record.content_type):
            logger.info(f"Skipping parse for {digest[:16]}... ({record.content_type})")
            await self._content_store.update_parse_result(digest, ParseStatus.SKIPPED)
            return ParseStatus.SKIPPED

        try:
            data = await self._blob_store.get(record.blob_key)
        except BlobStoreError as e:
            logger.error(f"Cannot read blob for {digest[:16]}...: {e}")
            return await self._fail(digest)

        try:
            handle = await self._with_retries(
                "submit", lambda: self._parse_service.submit(data, self._settings.mode)
            )
            text = await self._await_result(digest, handle)
        except ParseServiceError as e:
            logger.warning(f"Parse service failed for {digest[:16]}...: {e}")
            return await self._fail(digest)

        if text is None:
            return await self._fail(digest)

        await self._content_store.update_parse_result(digest, ParseStatus.READY, text)
        return ParseStatus.READY

    async def _await_result(self, digest: str, handle: str) -> Optional[str]:
        """Poll a job until it finishes or the attempt budget runs out."""
        attempts = self._settings.max_poll_attempts
        for attempt in range(1, attempts + 1):
            await asyncio.sleep(self._settings.poll_interval_seconds)
            status = await self._with_retries("poll", lambda: self._parse_service.poll_status(handle))

            if status is JobStatus.SUCCESS:
                return await self._with_retries("fetch", lambda: self._parse_service.fetch_result(handle))
            if status is JobStatus.ERROR:
                logger.warning(f"Parse job for {digest[:16]}... reported an error")
                return None

            logger.debug(f"Parse job for {digest[:16]}... pending (attempt {attempt}/{attempts})")

        logger.warning(f"Parse job for {digest[:16]}... timed out after {attempts} polls")
        return None

    async def _with_retries(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        attempts = self._settings.transport_retries + 1
        attempt = 1
        while True:
            try:
                return await call()
            except ParseServiceUnavailable as e:
                if attempt >= attempts:
                    raise
                logger.warning(f"Parse {operation} failed (attempt {attempt}/{attempts}): {e}")
                await asyncio.sleep(self._settings.retry_backoff_seconds * attempt)
                attempt += 1

    async def _fail(self, digest: str) -> ParseStatus:
        await self._content_store.update_parse_result(digest, ParseStatus.FAILED)
        return ParseStatus.FAILED

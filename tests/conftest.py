"""Shared fixtures and test doubles for the ingestion pipeline tests."""

import asyncio
from dataclasses import replace
from typing import List, Optional

import pytest

from docingest.clients import (
    BlobStoreError,
    JobStatus,
    LocalBlobStore,
    ParseServiceError,
    ParseServiceUnavailable,
    SqliteMetadataStore,
)
from docingest.config import ParserConfig
from docingest.ingestion import IngestionCoordinator
from docingest.services import AttachmentService, ContentStore, ParseOrchestrator


class CountingBlobStore(LocalBlobStore):
    """Local blob store that counts writes and can be told to fail them."""

    def __init__(self, root, fail_puts: bool = False, put_delay: float = 0.0):
        super().__init__(root)
        self.put_calls: List[str] = []
        self.fail_puts = fail_puts
        self.put_delay = put_delay

    async def put(self, key: str, data: bytes) -> None:
        self.put_calls.append(key)
        if self.put_delay:
            await asyncio.sleep(self.put_delay)
        if self.fail_puts:
            raise BlobStoreError(f"disk full while writing {key}")
        await super().put(key, data)


class FakeParseService:
    """Scripted parse service.

    Poll results are taken from ``statuses`` in order; once exhausted every
    poll reports ``final_status``. While ``gate`` is set but not released,
    polls report pending.
    """

    def __init__(
        self,
        result_text: str = "Hello",
        statuses: Optional[List[JobStatus]] = None,
        final_status: JobStatus = JobStatus.SUCCESS,
        submit_failures: int = 0,
        poll_failures: int = 0,
        reject_submit: bool = False,
        gate: Optional[asyncio.Event] = None,
    ):
        self.result_text = result_text
        self.statuses = list(statuses or [])
        self.final_status = final_status
        self.submit_failures = submit_failures
        self.poll_failures = poll_failures
        self.reject_submit = reject_submit
        self.gate = gate
        self.submitted: List[bytes] = []
        self.submit_attempts = 0
        self.poll_calls = 0
        self.modes: List[str] = []

    async def submit(self, data: bytes, mode: str) -> str:
        self.submit_attempts += 1
        if self.reject_submit:
            raise ParseServiceError("unsupported document format")
        if self.submit_failures:
            self.submit_failures -= 1
            raise ParseServiceUnavailable("connection reset")
        self.submitted.append(data)
        self.modes.append(mode)
        return f"job-{len(self.submitted)}"

    async def poll_status(self, handle: str) -> JobStatus:
        self.poll_calls += 1
        if self.poll_failures:
            self.poll_failures -= 1
            raise ParseServiceUnavailable("read timeout")
        if self.gate is not None and not self.gate.is_set():
            return JobStatus.PENDING
        if self.statuses:
            return self.statuses.pop(0)
        return self.final_status

    async def fetch_result(self, handle: str) -> str:
        return self.result_text


@pytest.fixture
def parser_settings():
    """Fast parser settings: no sleeping between polls or retries."""
    return ParserConfig(
        backend="document_intelligence",
        mode="prebuilt-read",
        max_text_length=50,
        poll_interval_seconds=0,
        max_poll_attempts=5,
        transport_retries=2,
        retry_backoff_seconds=0,
    )


@pytest.fixture
def metadata_store(tmp_path):
    """SQLite metadata store in a temporary directory."""
    store = SqliteMetadataStore(str(tmp_path / "metadata.db"))
    yield store
    store._sqlite_client.close()


@pytest.fixture
def blob_store(tmp_path):
    return CountingBlobStore(tmp_path / "blobs")


@pytest.fixture
def content_store(metadata_store, parser_settings):
    return ContentStore(metadata_store, max_text_length=parser_settings.max_text_length)


@pytest.fixture
def parse_service():
    return FakeParseService()


@pytest.fixture
async def make_coordinator(metadata_store, blob_store, content_store, parser_settings):
    """Factory for coordinators sharing the test's stores.

    Every coordinator built is drained at teardown so no parse task outlives
    the event loop.
    """
    built: List[IngestionCoordinator] = []

    def _make(parse_service=None, metadata_timeout=None, **settings_overrides) -> IngestionCoordinator:
        settings = replace(parser_settings, **settings_overrides)
        store = content_store
        if metadata_timeout is not None:
            store = ContentStore(
                metadata_store,
                max_text_length=settings.max_text_length,
                operation_timeout=metadata_timeout,
            )
        orchestrator = ParseOrchestrator(store, blob_store, parse_service, settings)
        coordinator = IngestionCoordinator(
            blob_store=blob_store,
            content_store=store,
            attachment_service=AttachmentService(metadata_store, operation_timeout=metadata_timeout),
            orchestrator=orchestrator,
            blob_timeout=5.0,
        )
        built.append(coordinator)
        return coordinator

    yield _make

    for coordinator in built:
        await coordinator.orchestrator.drain()

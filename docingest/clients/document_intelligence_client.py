"""Azure Document Intelligence client for document text extraction.

Submits the raw bytes to the analyze endpoint and keeps the returned
``Operation-Location`` URL as the job handle. Polling and result retrieval
are plain GETs against that URL, so the caller owns the polling schedule.
"""

import logging
from typing import Any, Dict, Optional

from azure.ai.documentintelligence.aio import DocumentIntelligenceClient
from azure.core.credentials import AzureKeyCredential
from azure.core.exceptions import AzureError, HttpResponseError
from azure.core.rest import HttpRequest

from docingest.clients.parse_service import (
    JobStatus,
    ParseServiceError,
    ParseServiceUnavailable,
)
from docingest.config.configuration import DocumentIntelligenceConfig

logger = logging.getLogger(__name__)

_RETRIABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

_JOB_STATUS = {
    "notstarted": JobStatus.PENDING,
    "running": JobStatus.PENDING,
    "succeeded": JobStatus.SUCCESS,
    "failed": JobStatus.ERROR,
    "canceled": JobStatus.ERROR,
}


def _create_document_intelligence_client(
    config: DocumentIntelligenceConfig,
) -> DocumentIntelligenceClient:
    """Create async Azure Document Intelligence client using configuration."""
    return DocumentIntelligenceClient(
        endpoint=config.endpoint,
        credential=AzureKeyCredential(config.api_key),
    )


def _extract_page_text(page: Dict[str, Any]) -> str:
    """
    Extract all text content from a single page.

    Args:
        page: Page object from the analyze result JSON.

    Returns:
        Concatenated text content from all lines on the page.
    """
    lines = page.get("lines") or []
    return "\n".join(line.get("content", "") for line in lines)


def _extract_text(analyze_result: Dict[str, Any]) -> str:
    """Return the document content, falling back to page lines."""
    content = analyze_result.get("content")
    if content:
        return content
    pages = analyze_result.get("pages") or []
    return "\n\n".join(
        text for text in (_extract_page_text(page) for page in pages) if text.strip()
    )


def _translate_error(action: str, error: AzureError) -> ParseServiceError:
    status_code = getattr(error, "status_code", None)
    if isinstance(error, HttpResponseError) and status_code is not None:
        if status_code not in _RETRIABLE_STATUS_CODES:
            return ParseServiceError(f"Document Intelligence rejected {action}: {error}")
    return ParseServiceUnavailable(f"Document Intelligence unavailable during {action}: {error}")


class DocumentIntelligenceParseService:
    """Parse service backed by Azure Document Intelligence."""

    def __init__(
        self,
        config: DocumentIntelligenceConfig,
        client: Optional[DocumentIntelligenceClient] = None,
    ):
        self._config = config
        self._client = client or _create_document_intelligence_client(config)

    def _analyze_url(self, model_id: str) -> str:
        endpoint = self._config.endpoint.rstrip("/")
        return f"{endpoint}/documentintelligence/documentModels/{model_id}:analyze"

    async def _get_operation(self, handle: str) -> Dict[str, Any]:
        try:
            response = await self._client.send_request(HttpRequest("GET", handle))
            response.raise_for_status()
            return response.json()
        except AzureError as e:
            raise _translate_error("status poll", e) from e

    async def submit(self, data: bytes, mode: str) -> str:
        """Start an analyze operation with the given model id.

        Returns:
            The Operation-Location URL, used as the job handle.

        Raises:
            ParseServiceUnavailable: On transport errors or throttling.
            ParseServiceError: If the service rejects the document.
        """
        request = HttpRequest(
            "POST",
            self._analyze_url(mode),
            params={
                "api-version": self._config.api_version,
                "outputContentFormat": "markdown",
            },
            headers={"Content-Type": "application/octet-stream"},
            content=data,
        )
        try:
            response = await self._client.send_request(request)
            response.raise_for_status()
        except AzureError as e:
            raise _translate_error("submit", e) from e

        handle = response.headers.get("Operation-Location")
        if not handle:
            raise ParseServiceError("Document Intelligence response had no Operation-Location header")

        logger.info(f"Submitted {len(data)} bytes to Document Intelligence ({mode})")
        return handle

    async def poll_status(self, handle: str) -> JobStatus:
        operation = await self._get_operation(handle)
        status = str(operation.get("status", "")).lower()
        if status not in _JOB_STATUS:
            raise ParseServiceError(f"Unknown Document Intelligence status: {status!r}")
        return _JOB_STATUS[status]

    async def fetch_result(self, handle: str) -> str:
        operation = await self._get_operation(handle)
        if str(operation.get("status", "")).lower() != "succeeded":
            raise ParseServiceError(
                f"Result requested for operation in status {operation.get('status')!r}"
            )
        return _extract_text(operation.get("analyzeResult") or {})

    async def close(self) -> None:
        await self._client.close()

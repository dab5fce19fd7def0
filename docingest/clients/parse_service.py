"""Parse service contract for asynchronous text extraction jobs."""

from enum import Enum
from typing import Protocol


class JobStatus(str, Enum):
    """Status of a parse job as reported by the parse service."""

    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class ParseServiceError(Exception):
    """Custom exception for parse service failures that should not be retried."""

    pass


class ParseServiceUnavailable(ParseServiceError):
    """The parse service could not be reached or timed out (retriable)."""

    pass


class ParseService(Protocol):
    """External text extraction provider with job-based processing."""

    async def submit(self, data: bytes, mode: str) -> str:
        """Start a parse job and return an opaque job handle."""
        ...

    async def poll_status(self, handle: str) -> JobStatus:
        ...

    async def fetch_result(self, handle: str) -> str:
        ...

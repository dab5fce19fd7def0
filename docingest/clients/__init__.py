"""Client modules for external services."""

from docingest.clients.blob_store import (
    BlobNotFoundError,
    BlobStore,
    BlobStoreError,
    LocalBlobStore,
)
from docingest.clients.cosmosdb_client import CosmosDBClient
from docingest.clients.document_intelligence_client import DocumentIntelligenceParseService
from docingest.clients.metadata_store import (
    CosmosMetadataStore,
    MetadataStore,
    MetadataStoreError,
    SqliteMetadataStore,
)
from docingest.clients.parse_service import (
    JobStatus,
    ParseService,
    ParseServiceError,
    ParseServiceUnavailable,
)
from docingest.clients.sqlite_client import SqliteClient

__all__ = [
    "BlobNotFoundError",
    "BlobStore",
    "BlobStoreError",
    "CosmosDBClient",
    "CosmosMetadataStore",
    "DocumentIntelligenceParseService",
    "JobStatus",
    "LocalBlobStore",
    "MetadataStore",
    "MetadataStoreError",
    "ParseService",
    "ParseServiceError",
    "ParseServiceUnavailable",
    "SqliteClient",
    "SqliteMetadataStore",
]

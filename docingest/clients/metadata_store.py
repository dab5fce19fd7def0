"""Metadata store backends for content records and attachments.

A metadata store holds JSON documents grouped into named collections and
addressed by key. Besides plain get/put/query it offers one atomic
primitive, ``create_if_absent``, which the content store and attachment
service build their race-safety on.
"""

import asyncio
import json
import logging
import re
import sqlite3
from typing import Any, Awaitable, Dict, List, Optional, Protocol, Tuple, TypeVar
from urllib.parse import quote

from azure.cosmos.exceptions import (
    CosmosHttpResponseError,
    CosmosResourceExistsError,
    CosmosResourceNotFoundError,
)

from docingest.clients.cosmosdb_client import CosmosDBClient
from docingest.clients.sqlite_client import SqliteClient

logger = logging.getLogger(__name__)

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

T = TypeVar("T")


class MetadataStoreError(Exception):
    """Custom exception for metadata store failures."""

    pass


class MetadataStore(Protocol):
    """Keyed document storage with an atomic check-and-create."""

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        ...

    async def put(self, collection: str, key: str, document: Dict[str, Any]) -> None:
        ...

    async def create_if_absent(
        self, collection: str, key: str, document: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], bool]:
        ...

    async def query(self, collection: str, **filters: Any) -> List[Dict[str, Any]]:
        ...

    async def delete(self, collection: str, key: str) -> bool:
        ...

    async def close(self) -> None:
        ...


async def with_timeout(awaitable: Awaitable[T], timeout: Optional[float], operation: str) -> T:
    """Await a metadata operation, turning a timeout into MetadataStoreError."""
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise MetadataStoreError(f"Metadata operation timed out after {timeout}s: {operation}") from e


def _check_field(name: str) -> str:
    if not _FIELD_NAME.match(name):
        raise ValueError(f"Invalid field name for query: {name!r}")
    return name


# SQL statements
CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS metadata_records (
    collection TEXT NOT NULL,
    key TEXT NOT NULL,
    body TEXT NOT NULL,
    PRIMARY KEY (collection, key)
)
"""


class SqliteMetadataStore:
    """Metadata store backed by a single SQLite table of JSON bodies.

    ``INSERT OR IGNORE`` against the (collection, key) primary key is the
    atomic check-and-create. Field queries use ``json_extract``.
    """

    def __init__(self, db_path: str = "document_metadata.db"):
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = db_path
        self._sqlite_client = SqliteClient(db_path)
        self._ensure_table_exists()

    def _ensure_table_exists(self) -> None:
        """Create the records table if it doesn't exist."""
        self._sqlite_client.execute_query(CREATE_TABLE_SQL)
        logger.debug(f"Metadata table initialized in {self._db_path}")

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as e:
            raise MetadataStoreError(f"SQLite operation failed: {e}") from e

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        rows = await self._run(
            self._sqlite_client.execute_query,
            "SELECT body FROM metadata_records WHERE collection = ? AND key = ?",
            (collection, key),
        )
        if not rows:
            return None
        return json.loads(rows[0][0])

    async def put(self, collection: str, key: str, document: Dict[str, Any]) -> None:
        await self._run(
            self._sqlite_client.execute_write,
            """INSERT INTO metadata_records (collection, key, body) VALUES (?, ?, ?)
               ON CONFLICT (collection, key) DO UPDATE SET body = excluded.body""",
            (collection, key, json.dumps(document)),
        )

    async def create_if_absent(
        self, collection: str, key: str, document: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], bool]:
        inserted = await self._run(
            self._sqlite_client.execute_write,
            "INSERT OR IGNORE INTO metadata_records (collection, key, body) VALUES (?, ?, ?)",
            (collection, key, json.dumps(document)),
        )
        if inserted:
            return document, True

        existing = await self.get(collection, key)
        if existing is None:
            raise MetadataStoreError(f"Record {collection}/{key} vanished after insert conflict")
        return existing, False

    async def query(self, collection: str, **filters: Any) -> List[Dict[str, Any]]:
        clauses = ["collection = ?"]
        params: List[Any] = [collection]
        for name, value in filters.items():
            path = f"json_extract(body, '$.{_check_field(name)}')"
            if value is None:
                clauses.append(f"{path} IS NULL")
                continue
            clauses.append(f"{path} = ?")
            params.append(int(value) if isinstance(value, bool) else value)

        rows = await self._run(
            self._sqlite_client.execute_query,
            f"SELECT body FROM metadata_records WHERE {' AND '.join(clauses)} ORDER BY rowid",
            tuple(params),
        )
        return [json.loads(row[0]) for row in rows]

    async def delete(self, collection: str, key: str) -> bool:
        deleted = await self._run(
            self._sqlite_client.execute_write,
            "DELETE FROM metadata_records WHERE collection = ? AND key = ?",
            (collection, key),
        )
        return deleted > 0

    async def close(self) -> None:
        """Close the database connection."""
        self._sqlite_client.close()


class CosmosMetadataStore:
    """Metadata store backed by one Cosmos DB container.

    Items are partitioned by collection name; the document itself lives
    under ``body``. ``create_item`` failing with a conflict is the atomic
    check-and-create.
    """

    def __init__(self, client: CosmosDBClient):
        self._client = client
        self._partition_field = client.partition_key_field

    @staticmethod
    def _item_id(key: str) -> str:
        # Cosmos ids may not contain '/', '\\', '?' or '#'
        return quote(key, safe=":-_.")

    def _item(self, collection: str, key: str, document: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": self._item_id(key),
            self._partition_field: collection,
            "key": key,
            "body": document,
        }

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        try:
            item = await self._client.read_item(self._item_id(key), partition_key=collection)
        except CosmosResourceNotFoundError:
            return None
        except CosmosHttpResponseError as e:
            raise MetadataStoreError(f"Failed to read {collection}/{key}: {e}") from e
        return item["body"]

    async def put(self, collection: str, key: str, document: Dict[str, Any]) -> None:
        try:
            await self._client.upsert_item(self._item(collection, key, document))
        except CosmosHttpResponseError as e:
            raise MetadataStoreError(f"Failed to write {collection}/{key}: {e}") from e

    async def create_if_absent(
        self, collection: str, key: str, document: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], bool]:
        try:
            await self._client.create_item(self._item(collection, key, document))
            return document, True
        except CosmosResourceExistsError:
            logger.debug(f"Create conflict on {collection}/{key}, reading existing item")
        except CosmosHttpResponseError as e:
            raise MetadataStoreError(f"Failed to create {collection}/{key}: {e}") from e

        existing = await self.get(collection, key)
        if existing is None:
            raise MetadataStoreError(f"Record {collection}/{key} vanished after create conflict")
        return existing, False

    async def query(self, collection: str, **filters: Any) -> List[Dict[str, Any]]:
        clauses = [f"c.{self._partition_field} = @collection"]
        parameters: List[Dict[str, Any]] = [{"name": "@collection", "value": collection}]
        for index, (name, value) in enumerate(filters.items()):
            path = f"c.body.{_check_field(name)}"
            if value is None:
                clauses.append(f"(NOT IS_DEFINED({path}) OR IS_NULL({path}))")
                continue
            clauses.append(f"{path} = @p{index}")
            parameters.append({"name": f"@p{index}", "value": value})

        try:
            items = await self._client.query_items(
                query=f"SELECT * FROM c WHERE {' AND '.join(clauses)}",
                parameters=parameters,
                partition_key=collection,
            )
        except CosmosHttpResponseError as e:
            raise MetadataStoreError(f"Failed to query {collection}: {e}") from e
        return [item["body"] for item in items]

    async def delete(self, collection: str, key: str) -> bool:
        try:
            await self._client.delete_item(self._item_id(key), partition_key=collection)
            return True
        except CosmosResourceNotFoundError:
            return False
        except CosmosHttpResponseError as e:
            raise MetadataStoreError(f"Failed to delete {collection}/{key}: {e}") from e

    async def close(self) -> None:
        await self._client.close()

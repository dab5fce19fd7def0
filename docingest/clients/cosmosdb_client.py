"""Azure Cosmos DB client for content and attachment metadata."""

import logging
from typing import Any, Optional

from azure.cosmos import PartitionKey
from azure.cosmos.aio import CosmosClient
from azure.cosmos.aio._container import ContainerProxy
from azure.cosmos.aio._database import DatabaseProxy

logger = logging.getLogger(__name__)


class CosmosDBClient:
    """Async Cosmos DB client with connection management.

    Uses the NoSQL API. Supports async context manager pattern for proper
    resource cleanup.
    """

    def __init__(
        self,
        endpoint: str,
        key: str,
        database_name: str,
        container_name: str,
        partition_key_path: str = "/collection",
    ):
        """Initialize the Cosmos DB client.

        Args:
            endpoint: Cosmos DB account endpoint URL
            key: Cosmos DB account key
            database_name: Name of the database to use
            container_name: Name of the container to use
            partition_key_path: Path to the partition key field (default: /collection)
        """
        self._endpoint = endpoint
        self._key = key
        self._database_name = database_name
        self._container_name = container_name
        self._partition_key_path = partition_key_path

        self._client: Optional[CosmosClient] = None
        self._database: Optional[DatabaseProxy] = None
        self._container: Optional[ContainerProxy] = None

    @property
    def partition_key_field(self) -> str:
        """Name of the top-level field holding the partition key."""
        return self._partition_key_path.lstrip("/")

    async def connect(self) -> None:
        """Open the client and create the database and container if missing."""
        self._client = CosmosClient(url=self._endpoint, credential=self._key)
        await self._client.__aenter__()

        self._database = await self._client.create_database_if_not_exists(id=self._database_name)
        self._container = await self._database.create_container_if_not_exists(
            id=self._container_name,
            partition_key=PartitionKey(path=self._partition_key_path),
        )
        logger.info(f"Connected to Cosmos DB {self._database_name}/{self._container_name}")

    async def close(self) -> None:
        """Close the Cosmos DB connection."""
        if self._client:
            await self._client.close()
            self._client = None
            self._database = None
            self._container = None

    async def __aenter__(self) -> "CosmosDBClient":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        """Async context manager exit with cleanup."""
        await self.close()
        return False

    def _require_container(self) -> ContainerProxy:
        if self._container is None:
            raise RuntimeError("CosmosDB client not connected. Call connect() first.")
        return self._container

    async def create_item(self, item: dict[str, Any]) -> dict[str, Any]:
        """Create an item, failing if an item with the same id already exists.

        Args:
            item: Dictionary containing the item data, including 'id' and the
                  partition key field.

        Returns:
            The created item with any system-generated fields.

        Raises:
            RuntimeError: If client is not connected.
            CosmosResourceExistsError: If the id is already taken in the partition.
        """
        container = self._require_container()
        result = await container.create_item(body=item)
        return dict(result)

    async def upsert_item(self, item: dict[str, Any]) -> dict[str, Any]:
        """Insert or update an item in the container.

        Args:
            item: Dictionary containing the item data, including 'id' and the
                  partition key field.

        Returns:
            The upserted item with any system-generated fields.

        Raises:
            RuntimeError: If client is not connected.
        """
        container = self._require_container()
        result = await container.upsert_item(body=item)
        return dict(result)

    async def query_items(
        self,
        query: str,
        parameters: Optional[list[dict[str, Any]]] = None,
        partition_key: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Query items from the container.

        Args:
            query: SQL query string
            parameters: Optional query parameters as list of {"name": "@param", "value": value}
            partition_key: Optional partition key to scope the query

        Returns:
            List of matching items.

        Raises:
            RuntimeError: If client is not connected.
        """
        container = self._require_container()

        query_options = {}
        if partition_key is not None:
            query_options["partition_key"] = partition_key

        items = []
        async for item in container.query_items(
            query=query,
            parameters=parameters,
            **query_options,
        ):
            items.append(dict(item))

        return items

    async def read_item(self, item_id: str, partition_key: str) -> dict[str, Any]:
        """Read a single item by id and partition key.

        Raises:
            RuntimeError: If client is not connected.
            CosmosResourceNotFoundError: If item not found.
        """
        container = self._require_container()
        result = await container.read_item(item=item_id, partition_key=partition_key)
        return dict(result)

    async def delete_item(self, item_id: str, partition_key: str) -> None:
        """Delete an item by id and partition key.

        Raises:
            RuntimeError: If client is not connected.
            CosmosResourceNotFoundError: If item not found.
        """
        container = self._require_container()
        await container.delete_item(item=item_id, partition_key=partition_key)

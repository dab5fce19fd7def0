"""Tests for the metadata store backends.

SQLite tests run against a temporary database. Cosmos tests use an
in-memory stand-in for CosmosDBClient; the live service is covered in
test_cosmosdb_integration.py.
"""

import asyncio

import pytest
from azure.cosmos.exceptions import (
    CosmosHttpResponseError,
    CosmosResourceExistsError,
    CosmosResourceNotFoundError,
)

from docingest.clients import CosmosMetadataStore, MetadataStoreError
from docingest.clients.metadata_store import with_timeout


class TestSqliteMetadataStore:
    """Test SqliteMetadataStore against a temporary database."""

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, metadata_store):
        assert await metadata_store.get("contents", "missing") is None

    @pytest.mark.asyncio
    async def test_put_and_get(self, metadata_store):
        await metadata_store.put("contents", "d1", {"digest": "d1", "parse_status": "pending"})

        assert await metadata_store.get("contents", "d1") == {"digest": "d1", "parse_status": "pending"}

    @pytest.mark.asyncio
    async def test_put_overwrites(self, metadata_store):
        await metadata_store.put("contents", "d1", {"parse_status": "pending"})
        await metadata_store.put("contents", "d1", {"parse_status": "ready"})

        assert (await metadata_store.get("contents", "d1"))["parse_status"] == "ready"

    @pytest.mark.asyncio
    async def test_collections_are_separate(self, metadata_store):
        await metadata_store.put("contents", "k", {"kind": "content"})
        await metadata_store.put("attachments", "k", {"kind": "attachment"})

        assert (await metadata_store.get("contents", "k"))["kind"] == "content"
        assert (await metadata_store.get("attachments", "k"))["kind"] == "attachment"

    @pytest.mark.asyncio
    async def test_create_if_absent_first_wins(self, metadata_store):
        first, created_first = await metadata_store.create_if_absent("contents", "d1", {"owner": "first"})
        second, created_second = await metadata_store.create_if_absent("contents", "d1", {"owner": "second"})

        assert created_first is True
        assert created_second is False
        assert first == second == {"owner": "first"}

    @pytest.mark.asyncio
    async def test_concurrent_create_if_absent_has_one_winner(self, metadata_store):
        """Test that racing creators agree on a single stored document."""
        results = await asyncio.gather(
            *(metadata_store.create_if_absent("contents", "d1", {"owner": i}) for i in range(10))
        )

        winners = [doc for doc, created in results if created]
        assert len(winners) == 1
        assert all(doc == winners[0] for doc, _ in results)

    @pytest.mark.asyncio
    async def test_query_filters_and_keeps_insertion_order(self, metadata_store):
        await metadata_store.put("attachments", "a1", {"container_id": "r1", "active": True})
        await metadata_store.put("attachments", "a2", {"container_id": "r2", "active": True})
        await metadata_store.put("attachments", "a3", {"container_id": "r1", "active": False})
        await metadata_store.put("attachments", "a4", {"container_id": "r1", "active": True})
        # Updating a row must not move it to the end
        await metadata_store.put("attachments", "a1", {"container_id": "r1", "active": True, "notes": "x"})

        active = await metadata_store.query("attachments", container_id="r1", active=True)
        everything = await metadata_store.query("attachments", container_id="r1")

        assert [doc.get("notes") for doc in active] == ["x", None]
        assert len(everything) == 3

    @pytest.mark.asyncio
    async def test_query_none_matches_null(self, metadata_store):
        await metadata_store.put("attachments", "a1", {"removed_at": None})
        await metadata_store.put("attachments", "a2", {"removed_at": "2024-01-01T00:00:00+00:00"})

        result = await metadata_store.query("attachments", removed_at=None)

        assert result == [{"removed_at": None}]

    @pytest.mark.asyncio
    async def test_query_rejects_unsafe_field_names(self, metadata_store):
        with pytest.raises(ValueError):
            await metadata_store.query("attachments", **{"x') OR 1=1 --": "y"})

    @pytest.mark.asyncio
    async def test_delete(self, metadata_store):
        await metadata_store.put("attachment_claims", "r1:d1", {"attachment_id": "a1"})

        assert await metadata_store.delete("attachment_claims", "r1:d1") is True
        assert await metadata_store.delete("attachment_claims", "r1:d1") is False
        assert await metadata_store.get("attachment_claims", "r1:d1") is None

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, tmp_path):
        """Test that records are durable across store instances."""
        from docingest.clients import SqliteMetadataStore

        db_path = str(tmp_path / "durable.db")
        store = SqliteMetadataStore(db_path)
        await store.put("contents", "d1", {"digest": "d1"})
        await store.close()

        reopened = SqliteMetadataStore(db_path)
        try:
            assert await reopened.get("contents", "d1") == {"digest": "d1"}
        finally:
            await reopened.close()


class TestWithTimeout:
    """Test the metadata operation timeout helper."""

    @pytest.mark.asyncio
    async def test_timeout_becomes_metadata_store_error(self):
        with pytest.raises(MetadataStoreError, match="slow read"):
            await with_timeout(asyncio.sleep(1), 0.01, "slow read")

    @pytest.mark.asyncio
    async def test_result_is_passed_through(self):
        async def fast():
            return 42

        assert await with_timeout(fast(), 1.0, "fast read") == 42


class FakeCosmosDBClient:
    """In-memory stand-in for CosmosDBClient, keyed by (partition, id)."""

    partition_key_field = "collection"

    def __init__(self, fail_with=None):
        self.items = {}
        self.queries = []
        self.fail_with = fail_with
        self.closed = False

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    async def create_item(self, item):
        self._check()
        key = (item["collection"], item["id"])
        if key in self.items:
            raise CosmosResourceExistsError(status_code=409, message="Entity with the specified id already exists")
        self.items[key] = item
        return item

    async def upsert_item(self, item):
        self._check()
        self.items[(item["collection"], item["id"])] = item
        return item

    async def read_item(self, item_id, partition_key):
        self._check()
        try:
            return self.items[(partition_key, item_id)]
        except KeyError:
            raise CosmosResourceNotFoundError(status_code=404, message="Entity not found")

    async def delete_item(self, item_id, partition_key):
        self._check()
        if self.items.pop((partition_key, item_id), None) is None:
            raise CosmosResourceNotFoundError(status_code=404, message="Entity not found")

    async def query_items(self, query, parameters=None, partition_key=None):
        self._check()
        self.queries.append((query, parameters, partition_key))
        return [item for (partition, _), item in self.items.items() if partition == partition_key]

    async def close(self):
        self.closed = True


class TestCosmosMetadataStore:
    """Test CosmosMetadataStore item mapping and error translation."""

    @pytest.mark.asyncio
    async def test_put_wraps_document_in_item(self):
        client = FakeCosmosDBClient()
        store = CosmosMetadataStore(client)

        await store.put("attachment_claims", "r1/x:d1", {"attachment_id": "a1"})

        item = client.items[("attachment_claims", "r1%2Fx:d1")]
        assert item["key"] == "r1/x:d1"
        assert item["body"] == {"attachment_id": "a1"}
        assert await store.get("attachment_claims", "r1/x:d1") == {"attachment_id": "a1"}

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self):
        store = CosmosMetadataStore(FakeCosmosDBClient())
        assert await store.get("contents", "missing") is None

    @pytest.mark.asyncio
    async def test_create_if_absent_conflict_returns_existing(self):
        store = CosmosMetadataStore(FakeCosmosDBClient())

        _, created_first = await store.create_if_absent("contents", "d1", {"owner": "first"})
        existing, created_second = await store.create_if_absent("contents", "d1", {"owner": "second"})

        assert created_first is True
        assert created_second is False
        assert existing == {"owner": "first"}

    @pytest.mark.asyncio
    async def test_query_builds_parameterized_sql(self):
        client = FakeCosmosDBClient()
        store = CosmosMetadataStore(client)
        await store.put("attachments", "a1", {"container_id": "r1", "active": True})

        result = await store.query("attachments", container_id="r1", removed_at=None)

        query, parameters, partition_key = client.queries[0]
        assert partition_key == "attachments"
        assert "c.collection = @collection" in query
        assert "c.body.container_id = @p0" in query
        assert "IS_NULL(c.body.removed_at)" in query
        assert {"name": "@p0", "value": "r1"} in parameters
        assert result == [{"container_id": "r1", "active": True}]

    @pytest.mark.asyncio
    async def test_delete(self):
        store = CosmosMetadataStore(FakeCosmosDBClient())
        await store.put("contents", "d1", {})

        assert await store.delete("contents", "d1") is True
        assert await store.delete("contents", "d1") is False

    @pytest.mark.asyncio
    async def test_service_errors_become_metadata_store_errors(self):
        client = FakeCosmosDBClient(fail_with=CosmosHttpResponseError(status_code=503, message="Service Unavailable"))
        store = CosmosMetadataStore(client)

        with pytest.raises(MetadataStoreError):
            await store.put("contents", "d1", {})
        with pytest.raises(MetadataStoreError):
            await store.get("contents", "d1")
        with pytest.raises(MetadataStoreError):
            await store.query("contents")

    @pytest.mark.asyncio
    async def test_close_closes_client(self):
        client = FakeCosmosDBClient()
        await CosmosMetadataStore(client).close()
        assert client.closed

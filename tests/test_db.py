"""Unit tests for db.py - PostgreSQL object store."""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import asyncpg
import pytest

from conftest import machine_set_resource
from db import DatabaseManager
from errors import ConflictError, NotFoundError, StoreError
from resources import ResourceRef

REF = ResourceRef(namespace="default", name="worker", kind="MachineSet")


class MockRecord:
    """Minimal stand-in for asyncpg.Record."""

    def __init__(self, data):
        self._data = data

    def __iter__(self):
        return iter(self._data.items())

    def keys(self):
        return self._data.keys()

    def get(self, key, default=None):
        return self._data.get(key, default)

    def __getitem__(self, key):
        return self._data[key]


def object_row(resource_version=5, annotations=None, deletion_timestamp=None):
    resource = machine_set_resource()
    return MockRecord(
        {
            "id": 1,
            "kind": "MachineSet",
            "namespace": "default",
            "name": "worker",
            "api_version": resource.api_version,
            "uid": "uid-1",
            "generation": 1,
            "resource_version": resource_version,
            "deletion_timestamp": deletion_timestamp,
            "labels": json.dumps(resource.metadata.labels),
            "annotations": (
                json.dumps(annotations) if annotations is not None else None
            ),
            "spec": json.dumps(resource.spec),
            "status": "{}",
            "data": "{}",
        }
    )


def test_not_connected_raises():
    db = DatabaseManager("localhost", 5432, "db", "user", "pass")

    with pytest.raises(RuntimeError, match="not connected"):
        db._ensure_connected()


class TestParseObjectRow:
    """Tests for row parsing."""

    def test_parses_json_columns(self):
        db = DatabaseManager("localhost", 5432, "db", "user", "pass")

        resource = db._parse_object_row(object_row(annotations={"a": "1"}))

        assert resource.ref == REF
        assert resource.metadata.resource_version == "5"
        assert resource.metadata.annotations == {"a": "1"}
        assert resource.metadata.labels == {
            "cluster.x-k8s.io/cluster-name": "test-cluster"
        }
        assert resource.spec["template"]["spec"]["providerSpec"]["value"]

    def test_null_annotations_stay_none(self):
        db = DatabaseManager("localhost", 5432, "db", "user", "pass")

        resource = db._parse_object_row(object_row())

        assert resource.metadata.annotations is None

    def test_deletion_timestamp_formatted(self):
        db = DatabaseManager("localhost", 5432, "db", "user", "pass")
        deleted_at = datetime(2020, 3, 4, 5, 6, 7, tzinfo=timezone.utc)

        resource = db._parse_object_row(object_row(deletion_timestamp=deleted_at))

        assert resource.metadata.deletion_timestamp == "2020-03-04T05:06:07Z"
        assert resource.is_deleting


@pytest.mark.asyncio
class TestDatabaseManagerAsync:
    """Async tests for DatabaseManager."""

    @pytest.fixture
    def db_manager(self, mock_pool):
        """Create a database manager wired to the mock pool."""
        db = DatabaseManager(
            host="localhost",
            port=5432,
            database="testdb",
            user="testuser",
            password="testpass",
        )
        db.pool = mock_pool
        return db

    async def test_connect(self):
        """Test database connection."""
        db = DatabaseManager("localhost", 5432, "testdb", "testuser", "testpass")
        with patch("db.asyncpg.create_pool", new_callable=AsyncMock) as mock_create:
            mock_pool = AsyncMock()
            mock_create.return_value = mock_pool

            await db.connect()

            mock_create.assert_called_once_with(
                host="localhost",
                port=5432,
                database="testdb",
                user="testuser",
                password="testpass",
                min_size=5,
                max_size=20,
                command_timeout=60,
            )
            assert db.pool is mock_pool

    async def test_close(self, db_manager, mock_pool):
        await db_manager.close()

        mock_pool.close.assert_called_once()

    async def test_initialize_schema_runs_migrations(self, db_manager, mock_pool):
        with patch("db.run_migrations", new_callable=AsyncMock) as mock_run:
            await db_manager.initialize_schema()

        mock_run.assert_called_once_with(mock_pool)

    async def test_get(self, db_manager, mock_connection):
        mock_connection.fetchrow = AsyncMock(return_value=object_row())

        resource = await db_manager.get(REF)

        assert resource.ref == REF
        args = mock_connection.fetchrow.call_args[0]
        assert args[1:] == ("MachineSet", "default", "worker")

    async def test_get_not_found(self, db_manager, mock_connection):
        mock_connection.fetchrow = AsyncMock(return_value=None)

        with pytest.raises(NotFoundError):
            await db_manager.get(REF)

    async def test_get_database_error(self, db_manager, mock_connection):
        mock_connection.fetchrow = AsyncMock(
            side_effect=asyncpg.PostgresError("connection lost")
        )

        with pytest.raises(StoreError, match="failed to get"):
            await db_manager.get(REF)

    async def test_patch_applies_delta(self, db_manager, mock_connection):
        mock_connection.fetchrow = AsyncMock(return_value=object_row())
        mock_connection.fetchval = AsyncMock(return_value=6)

        updated = await db_manager.patch(
            REF, {"metadata": {"annotations": {"a": "1"}}}, precondition="5"
        )

        assert updated.metadata.annotations == {"a": "1"}
        assert updated.metadata.resource_version == "6"
        mock_connection.transaction.assert_called_once()
        select_sql = mock_connection.fetchrow.call_args[0][0]
        assert "FOR UPDATE" in select_sql
        update_args = mock_connection.execute.call_args[0]
        assert "UPDATE objects" in update_args[0]
        assert update_args[3] == 6
        assert json.loads(update_args[5]) == {"a": "1"}

    async def test_patch_conflict(self, db_manager, mock_connection):
        row = object_row(resource_version=7)
        mock_connection.fetchrow = AsyncMock(return_value=row)

        with pytest.raises(ConflictError) as exc_info:
            await db_manager.patch(
                REF, {"metadata": {"annotations": {"a": "1"}}}, precondition="5"
            )

        assert exc_info.value.expected == "5"
        assert exc_info.value.actual == "7"
        mock_connection.execute.assert_not_called()

    async def test_empty_patch_is_noop(self, db_manager, mock_connection):
        row = object_row(resource_version=7)
        mock_connection.fetchrow = AsyncMock(return_value=row)

        result = await db_manager.patch(REF, {}, precondition="5")

        assert result.metadata.resource_version == "7"
        mock_connection.fetchval.assert_not_called()
        mock_connection.execute.assert_not_called()

    async def test_patch_not_found(self, db_manager, mock_connection):
        mock_connection.fetchrow = AsyncMock(return_value=None)

        with pytest.raises(NotFoundError):
            await db_manager.patch(REF, {"status": {"ready": True}})

    async def test_list_builds_filters(self, db_manager, mock_connection):
        mock_connection.fetch = AsyncMock(return_value=[object_row()])

        results = await db_manager.list(
            "MachineSet", namespace="default", labels={"team": "a"}
        )

        assert len(results) == 1
        query, *params = mock_connection.fetch.call_args[0]
        assert "namespace = $2" in query
        assert "labels @> $3::jsonb" in query
        assert params == ["MachineSet", "default", json.dumps({"team": "a"})]

    async def test_list_all_namespaces(self, db_manager, mock_connection):
        mock_connection.fetch = AsyncMock(return_value=[])

        await db_manager.list("MachineSet")

        query, *params = mock_connection.fetch.call_args[0]
        assert "namespace" not in query.split("ORDER BY")[0]
        assert params == ["MachineSet"]

    async def test_create_duplicate(self, db_manager, mock_connection):
        mock_connection.fetchrow = AsyncMock(
            side_effect=asyncpg.UniqueViolationError("duplicate key")
        )

        with pytest.raises(ConflictError, match="already exists"):
            await db_manager.create(machine_set_resource())

    async def test_create(self, db_manager, mock_connection):
        row = object_row(resource_version=1)
        mock_connection.fetchrow = AsyncMock(return_value=row)

        created = await db_manager.create(machine_set_resource())

        assert created.metadata.resource_version == "1"
        args = mock_connection.fetchrow.call_args[0]
        assert args[1:4] == ("MachineSet", "default", "worker")

    async def test_delete(self, db_manager, mock_connection):
        deleted_at = datetime(2020, 1, 1, tzinfo=timezone.utc)
        mock_connection.fetchrow = AsyncMock(
            return_value=object_row(deletion_timestamp=deleted_at)
        )

        deleted = await db_manager.delete(REF)

        assert deleted.is_deleting
        sql = mock_connection.fetchrow.call_args[0][0]
        assert "COALESCE(deletion_timestamp" in sql

    async def test_delete_not_found(self, db_manager, mock_connection):
        mock_connection.fetchrow = AsyncMock(return_value=None)

        with pytest.raises(NotFoundError):
            await db_manager.delete(REF)

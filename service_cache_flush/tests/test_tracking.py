"""
Unit tests for flush operation tracking.
"""

import json
from datetime import timedelta
from unittest.mock import AsyncMock

import asyncpg
import pytest

from shared.errors import PersistenceError
from shared.test_helpers import make_pool
from service_cache_flush.app.models import (
    FlushOperation,
    LayerFlushStatus,
    LayerResult,
    LayerStatus,
    OperationStatus,
    OperationType,
    ResultStatus,
    utc_now,
)
from service_cache_flush.app.tracking import InMemoryFlushStore
from service_cache_flush.app.tracking.postgres import PostgresFlushStore


def make_operation(operation_id="op-1", layers=("component_cache",)):
    return FlushOperation(
        operation_id=operation_id,
        operation_type=OperationType.MANUAL,
        requested_layers=list(layers),
        initiated_by="ops-admin",
    )


class TestInMemoryFlushStore:
    """Test cases for InMemoryFlushStore."""

    @pytest.mark.asyncio
    async def test_operation_lifecycle(self, store):
        operation = make_operation()
        await store.create_operation(operation)

        stored = await store.get_operation("op-1")
        assert stored.status == OperationStatus.RUNNING

        operation.status = OperationStatus.COMPLETED
        operation.completed_at = utc_now()
        operation.successes.append(LayerResult("component_cache", ResultStatus.SUCCESS, items_cleared=4))
        await store.finalize_operation(operation)

        stored = await store.get_operation("op-1")
        assert stored.status == OperationStatus.COMPLETED
        assert stored.success_details == {"results": [
            {"layer": "component_cache", "status": "success", "items_cleared": 4,
             "size_cleared_mb": 0.0, "duration_ms": 0}
        ]}

    @pytest.mark.asyncio
    async def test_returned_rows_are_copies(self, store):
        await store.create_operation(make_operation())

        stored = await store.get_operation("op-1")
        stored.status = OperationStatus.FAILED

        assert (await store.get_operation("op-1")).status == OperationStatus.RUNNING

    @pytest.mark.asyncio
    async def test_duplicate_operation_rejected(self, store):
        await store.create_operation(make_operation())

        with pytest.raises(PersistenceError):
            await store.create_operation(make_operation())

    @pytest.mark.asyncio
    async def test_finalize_only_once(self, store):
        operation = make_operation()
        await store.create_operation(operation)
        operation.status = OperationStatus.FAILED
        await store.finalize_operation(operation)

        with pytest.raises(PersistenceError):
            await store.finalize_operation(operation)

    @pytest.mark.asyncio
    async def test_finalize_unknown_operation(self, store):
        with pytest.raises(PersistenceError):
            await store.finalize_operation(make_operation("missing"))

    @pytest.mark.asyncio
    async def test_layer_row_lifecycle(self, store):
        await store.create_operation(make_operation())
        status = LayerFlushStatus(operation_id="op-1", layer_id="component_cache")
        await store.start_layer(status)

        with pytest.raises(PersistenceError):
            await store.start_layer(LayerFlushStatus(operation_id="op-1", layer_id="component_cache"))

        status.status = LayerStatus.COMPLETED
        status.items_cleared = 12
        status.completed_at = utc_now()
        await store.finish_layer(status)

        with pytest.raises(PersistenceError):
            await store.finish_layer(status)

        rows = await store.list_layer_statuses("op-1")
        assert len(rows) == 1
        assert rows[0].status == LayerStatus.COMPLETED
        assert rows[0].items_cleared == 12

    @pytest.mark.asyncio
    async def test_finish_without_start(self, store):
        await store.create_operation(make_operation())

        with pytest.raises(PersistenceError):
            await store.finish_layer(LayerFlushStatus(operation_id="op-1", layer_id="api_cache",
                                                      status=LayerStatus.ERROR))

    @pytest.mark.asyncio
    async def test_start_layer_for_unknown_operation(self, store):
        with pytest.raises(PersistenceError):
            await store.start_layer(LayerFlushStatus(operation_id="missing", layer_id="api_cache"))

    @pytest.mark.asyncio
    async def test_list_operations_newest_first(self, store):
        for index in range(12):
            await store.create_operation(make_operation(f"op-{index}"))

        recent = await store.list_operations()
        assert len(recent) == 10
        assert recent[0].operation_id == "op-11"
        assert recent[-1].operation_id == "op-2"
        assert [op.operation_id for op in await store.list_operations(2)] == ["op-11", "op-10"]

    @pytest.mark.asyncio
    async def test_last_cleared_at_ignores_errors(self, store):
        earlier = utc_now() - timedelta(hours=2)
        later = utc_now()
        for operation_id, layer_status, completed_at in [
            ("op-1", LayerStatus.COMPLETED, earlier),
            ("op-2", LayerStatus.ERROR, later),
        ]:
            await store.create_operation(make_operation(operation_id))
            status = LayerFlushStatus(operation_id=operation_id, layer_id="api_cache")
            await store.start_layer(status)
            status.status = layer_status
            status.completed_at = completed_at
            await store.finish_layer(status)

        assert await store.last_cleared_at("api_cache") == earlier
        assert await store.last_cleared_at("component_cache") is None


class TestPostgresFlushStore:
    """Test cases for PostgresFlushStore against a mocked pool."""

    @pytest.fixture
    def conn(self):
        conn = AsyncMock()
        conn.execute.return_value = "UPDATE 1"
        return conn

    @pytest.fixture
    def pg_store(self, conn):
        return PostgresFlushStore("postgres://test", pool=make_pool(conn))

    @pytest.mark.asyncio
    async def test_start_creates_tables(self, pg_store, conn):
        await pg_store.start()

        statements = " ".join(call.args[0] for call in conn.execute.await_args_list)
        assert "CREATE TABLE IF NOT EXISTS cache_flush_operations" in statements
        assert "CREATE TABLE IF NOT EXISTS cache_status_tracking" in statements

    @pytest.mark.asyncio
    async def test_finalize_writes_details(self, pg_store, conn):
        operation = make_operation()
        operation.status = OperationStatus.PARTIAL
        operation.errors.append(LayerResult("component_cache", ResultStatus.ERROR, error_message="boom"))

        await pg_store.finalize_operation(operation)

        args = conn.execute.await_args.args
        assert args[1] == "op-1"
        assert args[2] == "partial"
        assert json.loads(args[5])["results"][0]["error_message"] == "boom"

    @pytest.mark.asyncio
    async def test_finalize_of_closed_operation_fails(self, pg_store, conn):
        conn.execute.return_value = "UPDATE 0"

        with pytest.raises(PersistenceError):
            await pg_store.finalize_operation(make_operation())

    @pytest.mark.asyncio
    async def test_finish_of_terminal_row_fails(self, pg_store, conn):
        conn.execute.return_value = "UPDATE 0"

        with pytest.raises(PersistenceError):
            await pg_store.finish_layer(LayerFlushStatus(operation_id="op-1", layer_id="api_cache"))

    @pytest.mark.asyncio
    async def test_database_error_becomes_persistence_error(self, pg_store, conn):
        conn.execute.side_effect = asyncpg.PostgresError("relation does not exist")

        with pytest.raises(PersistenceError) as exc_info:
            await pg_store.create_operation(make_operation())

        assert exc_info.value.details["operation_id"] == "op-1"

    @pytest.mark.asyncio
    async def test_get_operation_maps_row(self, pg_store, conn):
        started = utc_now()
        conn.fetchrow.return_value = {
            "id": "op-1",
            "operation_type": "auto",
            "cache_layers": ["api_cache"],
            "initiated_by": "system:auto-flush",
            "status": "completed",
            "started_at": started,
            "completed_at": started,
            "success_details": json.dumps({"results": [
                {"layer": "api_cache", "status": "success", "items_cleared": 3,
                 "size_cleared_mb": 0.5, "duration_ms": 12}
            ]}),
            "error_details": None,
            "metadata": "{}",
        }

        operation = await pg_store.get_operation("op-1")

        assert operation.operation_type == OperationType.AUTO
        assert operation.status == OperationStatus.COMPLETED
        assert operation.successes[0].items_cleared == 3
        assert operation.errors == []

    @pytest.mark.asyncio
    async def test_get_unknown_operation(self, pg_store, conn):
        conn.fetchrow.return_value = None

        assert await pg_store.get_operation("missing") is None

    @pytest.mark.asyncio
    async def test_health_check_failure(self, pg_store, conn):
        conn.fetchval.side_effect = OSError("connection refused")

        assert await pg_store.health_check() is False

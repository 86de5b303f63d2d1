"""
Unit tests for the flush coordinator.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from shared.errors import ConfigResolutionError, LayerFlushError, PersistenceError, ValidationError
from shared.metrics import MetricsCollector
from shared.test_helpers import StubExecutor, TestDataFactory
from service_cache_flush.app.coordinator import FlushCoordinator, aggregate_status
from service_cache_flush.app.executors.base import ExecutorRegistry
from service_cache_flush.app.models import (
    CacheLayerConfig,
    LayerResult,
    LayerStatus,
    OperationStatus,
    OperationType,
    ResultStatus,
)
from service_cache_flush.app.registry import StaticLayerRegistry
from service_cache_flush.app.tracking import InMemoryFlushStore


class FailingFinishStore(InMemoryFlushStore):
    """Accepts the operation but rejects the first ``failures`` terminal layer writes."""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    async def finish_layer(self, status):
        if self.failures:
            self.failures -= 1
            raise PersistenceError("status table unavailable")
        await super().finish_layer(status)


class FailingCreateStore(InMemoryFlushStore):
    async def create_operation(self, operation):
        raise PersistenceError("connection refused")


class TestAggregateStatus:
    """Test cases for aggregate_status."""

    def test_all_success_is_completed(self):
        successes = [LayerResult("a", ResultStatus.SUCCESS), LayerResult("b", ResultStatus.SUCCESS)]
        assert aggregate_status(successes, []) == OperationStatus.COMPLETED

    def test_mixed_is_partial(self):
        successes = [LayerResult("a", ResultStatus.SUCCESS)]
        errors = [LayerResult("b", ResultStatus.ERROR, error_message="boom")]
        assert aggregate_status(successes, errors) == OperationStatus.PARTIAL

    def test_all_errors_is_failed(self):
        errors = [LayerResult("b", ResultStatus.ERROR, error_message="boom")]
        assert aggregate_status([], errors) == OperationStatus.FAILED

    def test_nothing_attempted_is_failed(self):
        assert aggregate_status([], []) == OperationStatus.FAILED

    def test_skipped_counts_as_success(self):
        skipped = [LayerResult("a", ResultStatus.SKIPPED)]
        assert aggregate_status(skipped, []) == OperationStatus.COMPLETED


class TestFlushCoordinator:
    """Test cases for FlushCoordinator."""

    @pytest.fixture
    def scheduler(self):
        return MagicMock()

    @pytest.fixture
    def coordinator(self, registry, executors, store, scheduler):
        return FlushCoordinator(registry, executors, store, scheduler)

    @pytest.mark.asyncio
    async def test_all_layers_succeed(self, coordinator, store):
        """Two healthy layers produce a completed operation with two success entries."""
        result = await coordinator.run_flush(["component_cache", "security_role_cache"], initiator="ops-admin")

        assert result.status == OperationStatus.COMPLETED
        assert [r.layer for r in result.results] == ["component_cache", "security_role_cache"]
        assert all(r.status == ResultStatus.SUCCESS for r in result.results)
        assert result.results[0].items_cleared == 10
        assert result.results[0].size_cleared_mb == 1.0
        assert result.results[1].items_cleared == 50
        assert result.total_items_cleared == 60

        operation = await store.get_operation(result.operation_id)
        assert operation.status == OperationStatus.COMPLETED
        assert operation.initiated_by == "ops-admin"
        assert operation.completed_at is not None
        assert [r.layer for r in operation.successes] == ["component_cache", "security_role_cache"]
        assert operation.errors == []

    @pytest.mark.asyncio
    async def test_failing_layer_yields_partial(self, coordinator, stub_executors, store):
        """A throwing executor is isolated; the remaining layer still runs."""
        stub_executors["api_cache"].error = RuntimeError("upstream cache unreachable")

        result = await coordinator.run_flush(["api_cache", "cdn_asset_cache"])

        assert result.status == OperationStatus.PARTIAL
        by_layer = {r.layer: r for r in result.results}
        assert by_layer["api_cache"].status == ResultStatus.ERROR
        assert by_layer["api_cache"].error_message == "upstream cache unreachable"
        assert by_layer["api_cache"].items_cleared == 0
        assert by_layer["cdn_asset_cache"].status == ResultStatus.SUCCESS
        assert stub_executors["cdn_asset_cache"].calls

        operation = await store.get_operation(result.operation_id)
        assert operation.status == OperationStatus.PARTIAL
        assert [r.layer for r in operation.errors] == ["api_cache"]
        assert operation.error_details["results"][0]["error_message"] == "upstream cache unreachable"

    @pytest.mark.asyncio
    async def test_unknown_layer_only_is_failed_with_no_results(self, coordinator, store, scheduler):
        """Nothing attempted: empty results, failed operation, no rebuild."""
        result = await coordinator.run_flush(["unknown_layer"])

        assert result.results == []
        assert result.status == OperationStatus.FAILED
        operation = await store.get_operation(result.operation_id)
        assert operation.status == OperationStatus.FAILED
        assert operation.successes == []
        assert operation.errors == []
        assert await store.list_layer_statuses(result.operation_id) == []
        scheduler.schedule_rebuild.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_operations_do_not_interfere(self, registry, store):
        """Overlapping operations on the same layer keep independent rows and counts."""
        component = StubExecutor("component_cache", items=7, size_bytes=2048, delay=0.05)
        api = StubExecutor("api_cache", items=3)
        executors = ExecutorRegistry()
        executors.register(component)
        executors.register(api)
        coordinator = FlushCoordinator(registry, executors, store)

        first, second = await asyncio.gather(
            coordinator.run_flush(["component_cache", "api_cache"]),
            coordinator.run_flush(["component_cache"]),
        )

        assert first.operation_id != second.operation_id
        assert first.status == OperationStatus.COMPLETED
        assert second.status == OperationStatus.COMPLETED
        assert first.total_items_cleared == 10
        assert second.total_items_cleared == 7

        first_rows = await store.list_layer_statuses(first.operation_id)
        second_rows = await store.list_layer_statuses(second.operation_id)
        assert [r.layer_id for r in first_rows] == ["component_cache", "api_cache"]
        assert [r.layer_id for r in second_rows] == ["component_cache"]
        assert first_rows[0].items_cleared == 7
        assert second_rows[0].items_cleared == 7
        assert len(component.calls) == 2
        # The per-layer lock serializes flushes of the same layer.
        assert component.max_active == 1

    @pytest.mark.asyncio
    async def test_results_follow_flush_priority(self, coordinator, store):
        result = await coordinator.run_flush(["security_role_cache", "api_cache", "component_cache"])

        assert [r.layer for r in result.results] == ["component_cache", "api_cache", "security_role_cache"]
        rows = await store.list_layer_statuses(result.operation_id)
        assert [r.layer_id for r in rows] == ["component_cache", "api_cache", "security_role_cache"]

    @pytest.mark.asyncio
    async def test_equal_priority_orders_by_layer_id(self, executors, store):
        registry = StaticLayerRegistry([
            CacheLayerConfig("security_role_cache", flush_priority=1),
            CacheLayerConfig("api_cache", flush_priority=1),
        ])
        coordinator = FlushCoordinator(registry, executors, store)

        result = await coordinator.run_flush(["security_role_cache", "api_cache"])

        assert [r.layer for r in result.results] == ["api_cache", "security_role_cache"]

    @pytest.mark.asyncio
    async def test_inactive_and_unknown_layers_are_not_attempted(self, executors, stub_executors, store):
        registry = StaticLayerRegistry(
            TestDataFactory.create_layer_configs(api_cache={"is_active": False})
        )
        coordinator = FlushCoordinator(registry, executors, store)

        result = await coordinator.run_flush(["api_cache", "nope_cache", "component_cache"])

        assert [r.layer for r in result.results] == ["component_cache"]
        assert stub_executors["api_cache"].calls == []
        rows = await store.list_layer_statuses(result.operation_id)
        assert [r.layer_id for r in rows] == ["component_cache"]

    @pytest.mark.asyncio
    async def test_no_rows_left_running(self, coordinator, stub_executors, store):
        stub_executors["ai_memory_cache"].error = LayerFlushError("ai_memory_cache", "model store offline")

        result = await coordinator.run_flush(["component_cache", "ai_memory_cache", "api_cache"])

        rows = await store.list_layer_statuses(result.operation_id)
        assert len(rows) == len(result.results) == 3
        assert all(row.is_terminal for row in rows)
        assert all(row.completed_at is not None for row in rows)
        assert {row.status for row in rows} == {LayerStatus.COMPLETED, LayerStatus.ERROR}
        operation = await store.get_operation(result.operation_id)
        assert operation.status != OperationStatus.RUNNING
        assert len(operation.successes) + len(operation.errors) == len(result.results)

    @pytest.mark.asyncio
    async def test_missing_executor_is_a_layer_error(self, executors, store):
        registry = StaticLayerRegistry([
            CacheLayerConfig("component_cache", flush_priority=1),
            CacheLayerConfig("search_cache", flush_priority=2),
        ])
        coordinator = FlushCoordinator(registry, executors, store)

        result = await coordinator.run_flush(["component_cache", "search_cache"])

        assert result.status == OperationStatus.PARTIAL
        error = result.results[1]
        assert error.layer == "search_cache"
        assert error.status == ResultStatus.ERROR
        assert error.error_message == "No flush executor registered for layer 'search_cache'"

    @pytest.mark.asyncio
    async def test_hung_executor_times_out(self, registry, store):
        executors = ExecutorRegistry()
        executors.register(StubExecutor("component_cache", delay=5.0))
        executors.register(StubExecutor("api_cache", items=4))
        coordinator = FlushCoordinator(registry, executors, store, layer_timeout_seconds=0.05)

        result = await coordinator.run_flush(["component_cache", "api_cache"])

        assert result.status == OperationStatus.PARTIAL
        assert result.results[0].status == ResultStatus.ERROR
        assert result.results[0].error_message == "Flush timed out after 0.05s"
        assert result.results[1].status == ResultStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_rebuild_scheduled_for_cleared_layers_only(self, coordinator, stub_executors, scheduler):
        stub_executors["api_cache"].error = RuntimeError("boom")

        result = await coordinator.run_flush(["component_cache", "api_cache", "security_role_cache"])

        scheduler.schedule_rebuild.assert_called_once_with(
            ["component_cache", "security_role_cache"],
            operation_id=result.operation_id,
        )

    @pytest.mark.asyncio
    async def test_no_rebuild_when_everything_failed(self, coordinator, stub_executors, scheduler):
        stub_executors["api_cache"].error = RuntimeError("boom")

        result = await coordinator.run_flush(["api_cache"])

        assert result.status == OperationStatus.FAILED
        scheduler.schedule_rebuild.assert_not_called()

    @pytest.mark.asyncio
    async def test_cooldown_skips_until_forced(self, executors, store, scheduler):
        registry = StaticLayerRegistry(
            TestDataFactory.create_layer_configs(api_cache={"config_metadata": {"cooldown_seconds": 60}})
        )
        coordinator = FlushCoordinator(registry, executors, store, scheduler)

        first = await coordinator.run_flush(["api_cache"])
        second = await coordinator.run_flush(["api_cache"])
        third = await coordinator.run_flush(["api_cache"], force=True)

        assert first.results[0].status == ResultStatus.SUCCESS
        assert second.results[0].status == ResultStatus.SKIPPED
        assert second.results[0].error_message.startswith("Cooldown active")
        assert second.status == OperationStatus.COMPLETED
        assert third.results[0].status == ResultStatus.SUCCESS

        skipped_rows = await store.list_layer_statuses(second.operation_id)
        assert skipped_rows[0].status == LayerStatus.SKIPPED
        assert scheduler.schedule_rebuild.call_count == 2

    @pytest.mark.asyncio
    async def test_force_and_metadata_reach_executor(self, executors, stub_executors, store):
        registry = StaticLayerRegistry(
            TestDataFactory.create_layer_configs(component_cache={"config_metadata": {"key_prefixes": ["c:"]}})
        )
        coordinator = FlushCoordinator(registry, executors, store)

        await coordinator.run_flush(["component_cache"], force=True)

        call = stub_executors["component_cache"].calls[0]
        assert call == {"layer_id": "component_cache", "metadata": {"key_prefixes": ["c:"]}, "force": True}

    @pytest.mark.asyncio
    async def test_empty_request_is_rejected(self, coordinator, store):
        with pytest.raises(ValidationError):
            await coordinator.run_flush([])
        assert await store.list_operations() == []

    @pytest.mark.asyncio
    async def test_unknown_operation_type_is_rejected(self, coordinator, store):
        with pytest.raises(ValidationError):
            await coordinator.run_flush(["component_cache"], operation_type="nightly")
        assert await store.list_operations() == []

    @pytest.mark.asyncio
    async def test_operation_type_is_recorded(self, coordinator, store):
        result = await coordinator.run_flush(["component_cache"], operation_type="scheduled")

        operation = await store.get_operation(result.operation_id)
        assert operation.operation_type == OperationType.SCHEDULED

    @pytest.mark.asyncio
    async def test_create_failure_aborts_before_any_layer(self, registry, executors, stub_executors, scheduler):
        coordinator = FlushCoordinator(registry, executors, FailingCreateStore(), scheduler)

        with pytest.raises(PersistenceError):
            await coordinator.run_flush(["component_cache"])

        assert stub_executors["component_cache"].calls == []
        scheduler.schedule_rebuild.assert_not_called()

    @pytest.mark.asyncio
    async def test_status_write_failure_fails_operation(self, registry, executors, scheduler):
        store = FailingFinishStore()
        coordinator = FlushCoordinator(registry, executors, store, scheduler)

        with pytest.raises(PersistenceError) as exc_info:
            await coordinator.run_flush(["component_cache", "api_cache"])

        assert exc_info.value.code == "PERSISTENCE_ERROR"
        operations = await store.list_operations()
        assert len(operations) == 1
        assert operations[0].status == OperationStatus.FAILED
        assert operations[0].error_details["reason"].startswith("Audit store write failed")
        scheduler.schedule_rebuild.assert_not_called()

        statuses = await store.list_layer_statuses(operations[0].operation_id)
        assert [(s.layer_id, s.status) for s in statuses] == [("component_cache", LayerStatus.ERROR)]
        assert statuses[0].error_message == "Aborted: audit store write failed"

    @pytest.mark.asyncio
    async def test_operation_closes_when_store_stays_down(self, registry, executors):
        store = FailingFinishStore(failures=2)
        coordinator = FlushCoordinator(registry, executors, store)

        with pytest.raises(PersistenceError):
            await coordinator.run_flush(["component_cache"])

        operation = (await store.list_operations())[0]
        assert operation.status == OperationStatus.FAILED
        assert store.failures == 0

    @pytest.mark.asyncio
    async def test_registry_failure_closes_operation(self, executors, store, stub_executors):
        registry = MagicMock()
        registry.resolve = AsyncMock(side_effect=ConfigResolutionError("registry file unreadable"))
        coordinator = FlushCoordinator(registry, executors, store)

        with pytest.raises(ConfigResolutionError):
            await coordinator.run_flush(["component_cache"])

        operations = await store.list_operations()
        assert operations[0].status == OperationStatus.FAILED
        assert "registry file unreadable" in operations[0].error_details["reason"]
        assert stub_executors["component_cache"].calls == []

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, registry, executors, stub_executors, store):
        metrics = MetricsCollector("cache-flush")
        stub_executors["api_cache"].error = RuntimeError("boom")
        coordinator = FlushCoordinator(registry, executors, store, metrics=metrics)

        await coordinator.run_flush(["component_cache", "api_cache"])

        sample = metrics.registry.get_sample_value
        assert sample("cache_flush_operations_total", {"operation_type": "manual", "status": "partial"}) == 1.0
        assert sample("cache_layer_flush_total", {"layer": "component_cache", "status": "completed"}) == 1.0
        assert sample("cache_layer_flush_total", {"layer": "api_cache", "status": "error"}) == 1.0
        assert sample("cache_items_cleared_total", {"layer": "component_cache"}) == 10.0
        assert sample("cache_layer_flush_duration_seconds_count", {"layer": "api_cache"}) == 1.0

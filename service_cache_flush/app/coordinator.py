"""
Operation coordinator for cache flushes.

Flow of one ``run_flush`` call:

1. persist a ``running`` FlushOperation (nothing else happens if that fails)
2. resolve requested layers against the registry, in flush-priority order
3. per layer, sequentially: insert a ``running`` status row, call the
   executor, move the row to its terminal state
4. aggregate the operation status and persist it
5. hand the cleared layers to the rebuild scheduler without waiting

Executor failures stay inside the layer that produced them. Registry and
store failures abort the call.
"""

import asyncio
import uuid
from collections import defaultdict
from time import perf_counter
from typing import Dict, List, Optional, Sequence, Union, TYPE_CHECKING

from shared.errors import ConfigResolutionError, LayerFlushError, LayerSkipped, PersistenceError, ValidationError
from shared.logging import get_logger, operation_context

from .executors.base import ExecutorRegistry
from .models import (
    CacheLayerConfig,
    FlushOperation,
    FlushResult,
    LayerFlushStatus,
    LayerResult,
    LayerStatus,
    OperationStatus,
    OperationType,
    ResultStatus,
    utc_now,
)
from .registry.loader import LayerRegistry
from .tracking.store import FlushStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector
    from .rebuild.scheduler import RebuildScheduler


def aggregate_status(successes: Sequence[LayerResult], errors: Sequence[LayerResult]) -> OperationStatus:
    """Overall status from the per-layer outcome lists.

    Skipped layers are carried in ``successes``. No attempted layers at all is
    reported as ``failed``.
    """
    if not errors and successes:
        return OperationStatus.COMPLETED
    if errors and successes:
        return OperationStatus.PARTIAL
    return OperationStatus.FAILED


class FlushCoordinator:
    """Runs flush operations across cache layers."""

    def __init__(
        self,
        registry: LayerRegistry,
        executors: ExecutorRegistry,
        store: FlushStore,
        scheduler: Optional["RebuildScheduler"] = None,
        *,
        layer_timeout_seconds: float = 30.0,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.registry = registry
        self.executors = executors
        self.store = store
        self.scheduler = scheduler
        self.layer_timeout_seconds = layer_timeout_seconds
        self.metrics = metrics
        self.logger = get_logger("cache-flush.coordinator")
        # Advisory: serializes flushes of the same layer across concurrent operations.
        self._layer_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def run_flush(
        self,
        layers: Sequence[str],
        operation_type: Union[OperationType, str] = OperationType.MANUAL,
        force: bool = False,
        initiator: Optional[str] = None,
    ) -> FlushResult:
        """Flush ``layers`` and return the per-layer outcome.

        Raises:
            ValidationError: ``layers`` is empty.
            PersistenceError: The audit store rejected a write.
            ConfigResolutionError: The layer registry could not be read.
        """
        if not layers:
            raise ValidationError("At least one cache layer must be requested")

        try:
            op_type = OperationType(operation_type)
        except ValueError:
            raise ValidationError(f"Unknown operation type '{operation_type}'")

        operation = FlushOperation(
            operation_id=str(uuid.uuid4()),
            operation_type=op_type,
            requested_layers=list(layers),
            initiated_by=initiator,
        )
        await self.store.create_operation(operation)

        with operation_context(operation.operation_id):
            self.logger.info(
                "Flush operation started",
                operation_type=operation.operation_type.value,
                requested_layers=operation.requested_layers,
                force=force,
                initiated_by=initiator,
            )
            results = await self._run(operation, force)

        result = FlushResult(operation_id=operation.operation_id, status=operation.status, results=results)
        self._record_operation(operation, result)

        cleared = result.cleared_layers
        if cleared and self.scheduler is not None:
            self.scheduler.schedule_rebuild(cleared, operation_id=operation.operation_id)

        return result

    async def _run(self, operation: FlushOperation, force: bool) -> List[LayerResult]:
        try:
            configs = await self.registry.resolve(operation.requested_layers)
        except ConfigResolutionError as e:
            await self._abort(operation, f"Layer registry unavailable: {e.message}")
            raise

        resolved_ids = {c.layer_id for c in configs}
        ignored = [lid for lid in operation.requested_layers if lid not in resolved_ids]
        if ignored:
            self.logger.info("Ignoring unknown or inactive layers", layers=ignored)

        results: List[LayerResult] = []
        try:
            for config in configs:
                result = await self._flush_layer(operation, config, force)
                results.append(result)
                if result.status == ResultStatus.ERROR:
                    operation.errors.append(result)
                else:
                    operation.successes.append(result)

            operation.status = aggregate_status(operation.successes, operation.errors)
            operation.completed_at = utc_now()
            await self.store.finalize_operation(operation)
        except PersistenceError as e:
            self.logger.error(
                "Audit store write failed, aborting flush operation",
                operation_id=operation.operation_id,
                error=e.message,
                details=e.details,
            )
            await self._abort(operation, f"Audit store write failed: {e.message}")
            raise

        self.logger.info(
            "Flush operation finished",
            operation_id=operation.operation_id,
            status=operation.status.value,
            attempted=len(results),
            succeeded=len(operation.successes),
            failed=len(operation.errors),
        )
        return results

    async def _flush_layer(self, operation: FlushOperation, config: CacheLayerConfig, force: bool) -> LayerResult:
        layer_id = config.layer_id
        async with self._layer_locks[layer_id]:
            status = LayerFlushStatus(operation_id=operation.operation_id, layer_id=layer_id)
            await self.store.start_layer(status)

            start = perf_counter()
            try:
                executor = self.executors.get(layer_id)
                items, size_mb = await asyncio.wait_for(
                    executor.flush(layer_id, config.config_metadata, force),
                    timeout=self.layer_timeout_seconds,
                )
            except LayerSkipped as e:
                status.status = LayerStatus.SKIPPED
                status.error_message = e.message
            except LayerFlushError as e:
                status.status = LayerStatus.ERROR
                status.error_message = e.message
            except asyncio.TimeoutError:
                status.status = LayerStatus.ERROR
                status.error_message = f"Flush timed out after {self.layer_timeout_seconds:g}s"
            except Exception as e:
                status.status = LayerStatus.ERROR
                status.error_message = str(e) or e.__class__.__name__
            else:
                status.status = LayerStatus.COMPLETED
                status.items_cleared = items
                status.size_cleared_mb = size_mb

            duration = perf_counter() - start
            status.duration_ms = int(round(duration * 1000))
            status.completed_at = utc_now()
            try:
                await self.store.finish_layer(status)
            except PersistenceError:
                await self._fail_layer_row(status)
                raise

        self._record_layer(status, duration)
        log = self.logger.warning if status.status == LayerStatus.ERROR else self.logger.info
        log(
            "Cache layer flush finished",
            layer=layer_id,
            status=status.status.value,
            items_cleared=status.items_cleared,
            size_cleared_mb=status.size_cleared_mb,
            duration_ms=status.duration_ms,
            error=status.error_message,
        )
        return status.to_result()

    async def _fail_layer_row(self, status: LayerFlushStatus) -> None:
        """Move a row whose terminal write failed to ``error``; one best-effort write."""
        status.status = LayerStatus.ERROR
        status.error_message = "Aborted: audit store write failed"
        try:
            await self.store.finish_layer(status)
        except PersistenceError as e:
            self.logger.error(
                "Unable to close layer status row",
                layer=status.layer_id,
                error=e.message,
            )

    async def _abort(self, operation: FlushOperation, reason: str) -> None:
        """Close ``operation`` as failed; one best-effort write."""
        operation.status = OperationStatus.FAILED
        operation.completed_at = utc_now()
        operation.metadata["failure_reason"] = reason
        try:
            await self.store.finalize_operation(operation)
        except PersistenceError as e:
            self.logger.error(
                "Unable to close aborted flush operation",
                operation_id=operation.operation_id,
                error=e.message,
            )
        if self.metrics:
            self.metrics.increment_counter(
                "cache_flush_operations_total",
                operation_type=operation.operation_type.value,
                status="aborted",
            )

    def _record_layer(self, status: LayerFlushStatus, duration: float) -> None:
        if not self.metrics:
            return
        self.metrics.increment_counter("cache_layer_flush_total", layer=status.layer_id, status=status.status.value)
        self.metrics.observe_histogram("cache_layer_flush_duration_seconds", duration, layer=status.layer_id)
        if status.status == LayerStatus.COMPLETED and status.items_cleared:
            self.metrics.increment_counter("cache_items_cleared_total", status.items_cleared, layer=status.layer_id)

    def _record_operation(self, operation: FlushOperation, result: FlushResult) -> None:
        if not self.metrics:
            return
        self.metrics.increment_counter(
            "cache_flush_operations_total",
            operation_type=operation.operation_type.value,
            status=result.status.value,
        )
        self.metrics.record_business_event(f"cache_flush_{result.status.value}")

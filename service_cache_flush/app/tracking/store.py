"""
Status tracker and audit store for flush operations.
"""

import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from shared.errors import PersistenceError
from shared.logging import get_logger

from ..models import FlushOperation, LayerFlushStatus, LayerStatus, OperationStatus


class FlushStore(ABC):
    """Durable record of flush operations and their per-layer statuses.

    Writers must enforce the lifecycle: an operation is finalized once, a
    layer row is inserted once per (operation_id, layer_id) and finished once.
    Every failed write raises ``PersistenceError``.
    """

    async def start(self) -> None:
        """Open connections / create schema."""

    async def stop(self) -> None:
        """Release resources."""

    @abstractmethod
    async def create_operation(self, operation: FlushOperation) -> None:
        """Insert a new operation in ``running`` state."""

    @abstractmethod
    async def finalize_operation(self, operation: FlushOperation) -> None:
        """Persist the terminal status, completed_at and details of an operation."""

    @abstractmethod
    async def start_layer(self, status: LayerFlushStatus) -> None:
        """Insert a ``running`` row for one layer of an operation."""

    @abstractmethod
    async def finish_layer(self, status: LayerFlushStatus) -> None:
        """Move a layer row to its terminal state."""

    @abstractmethod
    async def get_operation(self, operation_id: str) -> Optional[FlushOperation]:
        """Return an operation, or None when unknown."""

    @abstractmethod
    async def list_layer_statuses(self, operation_id: str) -> List[LayerFlushStatus]:
        """Return the layer rows of an operation in the order they were started."""

    @abstractmethod
    async def list_operations(self, limit: int = 10) -> List[FlushOperation]:
        """Return the most recent operations, newest first."""

    @abstractmethod
    async def last_cleared_at(self, layer_id: str) -> Optional[datetime]:
        """Return when ``layer_id`` was last flushed successfully."""

    async def health_check(self) -> bool:
        return True


class InMemoryFlushStore(FlushStore):
    """Process-local store used for development and tests.

    Rows are copied on the way in and out so callers never share state with
    the stored records.
    """

    def __init__(self):
        self.logger = get_logger("cache-flush.store.memory")
        self._operations: Dict[str, FlushOperation] = {}
        self._order: List[str] = []
        self._statuses: Dict[Tuple[str, str], LayerFlushStatus] = {}
        self._status_order: Dict[str, List[str]] = {}

    async def create_operation(self, operation: FlushOperation) -> None:
        if operation.operation_id in self._operations:
            raise PersistenceError(
                "Operation already exists",
                details={"operation_id": operation.operation_id},
            )
        self._operations[operation.operation_id] = copy.deepcopy(operation)
        self._order.append(operation.operation_id)
        self._status_order[operation.operation_id] = []

    async def finalize_operation(self, operation: FlushOperation) -> None:
        stored = self._operations.get(operation.operation_id)
        if stored is None:
            raise PersistenceError("Unknown operation", details={"operation_id": operation.operation_id})
        if stored.status != OperationStatus.RUNNING:
            raise PersistenceError(
                "Operation already finalized",
                details={"operation_id": operation.operation_id, "status": stored.status.value},
            )
        self._operations[operation.operation_id] = copy.deepcopy(operation)

    async def start_layer(self, status: LayerFlushStatus) -> None:
        if status.operation_id not in self._operations:
            raise PersistenceError("Unknown operation", details={"operation_id": status.operation_id})
        key = (status.operation_id, status.layer_id)
        if key in self._statuses:
            raise PersistenceError(
                "Layer status already recorded",
                details={"operation_id": status.operation_id, "layer_id": status.layer_id},
            )
        self._statuses[key] = copy.deepcopy(status)
        self._status_order[status.operation_id].append(status.layer_id)

    async def finish_layer(self, status: LayerFlushStatus) -> None:
        key = (status.operation_id, status.layer_id)
        stored = self._statuses.get(key)
        if stored is None:
            raise PersistenceError(
                "Layer status was never started",
                details={"operation_id": status.operation_id, "layer_id": status.layer_id},
            )
        if stored.status != LayerStatus.RUNNING:
            raise PersistenceError(
                "Layer status already terminal",
                details={"operation_id": status.operation_id, "layer_id": status.layer_id},
            )
        self._statuses[key] = copy.deepcopy(status)

    async def get_operation(self, operation_id: str) -> Optional[FlushOperation]:
        operation = self._operations.get(operation_id)
        return copy.deepcopy(operation) if operation else None

    async def list_layer_statuses(self, operation_id: str) -> List[LayerFlushStatus]:
        return [
            copy.deepcopy(self._statuses[(operation_id, layer_id)])
            for layer_id in self._status_order.get(operation_id, [])
        ]

    async def list_operations(self, limit: int = 10) -> List[FlushOperation]:
        recent = self._order[-limit:] if limit > 0 else []
        return [copy.deepcopy(self._operations[op_id]) for op_id in reversed(recent)]

    async def last_cleared_at(self, layer_id: str) -> Optional[datetime]:
        cleared = [
            s.completed_at
            for (_, lid), s in self._statuses.items()
            if lid == layer_id and s.status == LayerStatus.COMPLETED and s.completed_at
        ]
        return max(cleared) if cleared else None

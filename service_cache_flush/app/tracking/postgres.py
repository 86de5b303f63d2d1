"""
PostgreSQL persistence for flush operations and layer statuses.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from shared.errors import PersistenceError
from shared.logging import get_logger

from ..models import (
    FlushOperation,
    LayerFlushStatus,
    LayerResult,
    LayerStatus,
    OperationStatus,
    OperationType,
)
from .store import FlushStore

DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class PostgresFlushStore(FlushStore):
    """Audit store backed by the cache_flush_operations / cache_status_tracking tables."""

    def __init__(self, dsn: str, *, pool: Optional[asyncpg.Pool] = None):
        self.dsn = dsn
        self.logger = get_logger("cache-flush.store.postgres")
        self.pool: Optional[asyncpg.Pool] = pool

    async def start(self):
        """Start the persistence layer."""
        try:
            if self.pool is None:
                self.pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=2,
                    max_size=10,
                    command_timeout=30
                )
            await self._create_tables()
            self.logger.info("PostgreSQL flush store started")
        except DB_ERRORS as e:
            self.logger.error("Failed to start PostgreSQL flush store", error=str(e))
            raise PersistenceError("Unable to start PostgreSQL flush store", details={"error": str(e)}) from e

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL flush store stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS cache_flush_operations (
                    id VARCHAR(64) PRIMARY KEY,
                    operation_type VARCHAR(20) NOT NULL,
                    cache_layers TEXT[] NOT NULL,
                    initiated_by VARCHAR(255),
                    status VARCHAR(20) NOT NULL DEFAULT 'running',
                    started_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    completed_at TIMESTAMP WITH TIME ZONE,
                    success_details JSONB,
                    error_details JSONB,
                    metadata JSONB NOT NULL DEFAULT '{}'
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS cache_status_tracking (
                    id BIGSERIAL PRIMARY KEY,
                    operation_id VARCHAR(64) NOT NULL REFERENCES cache_flush_operations(id),
                    cache_layer VARCHAR(100) NOT NULL,
                    status VARCHAR(20) NOT NULL DEFAULT 'running',
                    items_cleared INTEGER NOT NULL DEFAULT 0,
                    size_cleared_mb DOUBLE PRECISION NOT NULL DEFAULT 0,
                    error_message TEXT,
                    started_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    completed_at TIMESTAMP WITH TIME ZONE,
                    duration_ms INTEGER,
                    UNIQUE (operation_id, cache_layer)
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_cache_flush_operations_started
                ON cache_flush_operations(started_at DESC);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_cache_status_tracking_layer
                ON cache_status_tracking(cache_layer, status);
            """)

    async def create_operation(self, operation: FlushOperation) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO cache_flush_operations (
                        id, operation_type, cache_layers, initiated_by, status, started_at, metadata
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                """,
                    operation.operation_id, operation.operation_type.value, list(operation.requested_layers),
                    operation.initiated_by, operation.status.value, operation.created_at,
                    json.dumps(operation.metadata),
                )
        except DB_ERRORS as e:
            self._fail("Error creating flush operation", e, operation_id=operation.operation_id)

    async def finalize_operation(self, operation: FlushOperation) -> None:
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute("""
                    UPDATE cache_flush_operations
                    SET status = $2, completed_at = $3,
                        success_details = $4::jsonb, error_details = $5::jsonb, metadata = $6::jsonb
                    WHERE id = $1 AND status = 'running'
                """,
                    operation.operation_id, operation.status.value, operation.completed_at,
                    json.dumps(operation.success_details), json.dumps(operation.error_details),
                    json.dumps(operation.metadata),
                )
        except DB_ERRORS as e:
            self._fail("Error finalizing flush operation", e, operation_id=operation.operation_id)
        if result != "UPDATE 1":
            raise PersistenceError(
                "Operation is unknown or already finalized",
                details={"operation_id": operation.operation_id},
            )

    async def start_layer(self, status: LayerFlushStatus) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO cache_status_tracking (operation_id, cache_layer, status, started_at)
                    VALUES ($1, $2, $3, $4)
                """, status.operation_id, status.layer_id, status.status.value, status.started_at)
        except DB_ERRORS as e:
            self._fail("Error recording layer start", e, operation_id=status.operation_id, layer=status.layer_id)

    async def finish_layer(self, status: LayerFlushStatus) -> None:
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute("""
                    UPDATE cache_status_tracking
                    SET status = $3, items_cleared = $4, size_cleared_mb = $5,
                        error_message = $6, completed_at = $7, duration_ms = $8
                    WHERE operation_id = $1 AND cache_layer = $2 AND status = 'running'
                """,
                    status.operation_id, status.layer_id, status.status.value, status.items_cleared,
                    status.size_cleared_mb, status.error_message, status.completed_at, status.duration_ms,
                )
        except DB_ERRORS as e:
            self._fail("Error recording layer result", e, operation_id=status.operation_id, layer=status.layer_id)
        if result != "UPDATE 1":
            raise PersistenceError(
                "Layer status is unknown or already terminal",
                details={"operation_id": status.operation_id, "layer_id": status.layer_id},
            )

    async def get_operation(self, operation_id: str) -> Optional[FlushOperation]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow("SELECT * FROM cache_flush_operations WHERE id = $1", operation_id)
        except DB_ERRORS as e:
            self._fail("Error loading flush operation", e, operation_id=operation_id)
        return self._row_to_operation(row) if row else None

    async def list_layer_statuses(self, operation_id: str) -> List[LayerFlushStatus]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch("""
                    SELECT * FROM cache_status_tracking WHERE operation_id = $1 ORDER BY id ASC
                """, operation_id)
        except DB_ERRORS as e:
            self._fail("Error loading layer statuses", e, operation_id=operation_id)
        return [self._row_to_status(row) for row in rows]

    async def list_operations(self, limit: int = 10) -> List[FlushOperation]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch("""
                    SELECT * FROM cache_flush_operations ORDER BY started_at DESC LIMIT $1
                """, limit)
        except DB_ERRORS as e:
            self._fail("Error listing flush operations", e)
        return [self._row_to_operation(row) for row in rows]

    async def last_cleared_at(self, layer_id: str) -> Optional[datetime]:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval("""
                    SELECT MAX(completed_at) FROM cache_status_tracking
                    WHERE cache_layer = $1 AND status = 'completed'
                """, layer_id)
        except DB_ERRORS as e:
            self._fail("Error loading last flush time", e, layer=layer_id)

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except DB_ERRORS:
            return False

    def _fail(self, message: str, error: Exception, **context) -> None:
        self.logger.error(message, error=str(error), **context)
        raise PersistenceError(message, details={"error": str(error), **context}) from error

    @staticmethod
    def _load_json(value: Any) -> Dict[str, Any]:
        if value is None:
            return {}
        if isinstance(value, str):
            return json.loads(value)
        return dict(value)

    def _row_to_operation(self, row) -> FlushOperation:
        success_details = self._load_json(row["success_details"])
        error_details = self._load_json(row["error_details"])
        return FlushOperation(
            operation_id=row["id"],
            operation_type=OperationType(row["operation_type"]),
            requested_layers=list(row["cache_layers"]),
            initiated_by=row["initiated_by"],
            status=OperationStatus(row["status"]),
            created_at=row["started_at"],
            completed_at=row["completed_at"],
            successes=[LayerResult.from_dict(r) for r in success_details.get("results", [])],
            errors=[LayerResult.from_dict(r) for r in error_details.get("results", [])],
            metadata=self._load_json(row["metadata"]),
        )

    @staticmethod
    def _row_to_status(row) -> LayerFlushStatus:
        return LayerFlushStatus(
            operation_id=row["operation_id"],
            layer_id=row["cache_layer"],
            status=LayerStatus(row["status"]),
            items_cleared=row["items_cleared"],
            size_cleared_mb=row["size_cleared_mb"],
            error_message=row["error_message"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            duration_ms=row["duration_ms"],
        )

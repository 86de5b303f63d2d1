"""
Cache flush service.

Exposes the flush coordinator over HTTP: privileged operators trigger flushes
of one or more cache layers and read back the audit trail of past operations.
"""

from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Query

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import NotFoundError
from shared.logging import set_user_context

from .auth import HeaderAuthorizer, Principal
from .auto_flush import AutoFlushWorker
from .coordinator import FlushCoordinator
from .executors import ExecutorRegistry, build_default_executors
from .models import FlushRequest, FlushResponse
from .rebuild import RebuildScheduler, WebhookRebuildDispatcher
from .rebuild.scheduler import RebuildHandler
from .registry import FileLayerRegistry, LayerRegistry
from .registry.postgres import PostgresLayerRegistry
from .tracking import FlushStore, InMemoryFlushStore
from .tracking.postgres import PostgresFlushStore

SERVICE_NAME = "cache-flush"
SERVICE_PORT = 8013


class CacheFlushService(BaseService):
    """Cache flush service implementation.

    Every collaborator can be passed in; anything left out is built from
    ``config``.
    """

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        registry: Optional[LayerRegistry] = None,
        store: Optional[FlushStore] = None,
        executors: Optional[ExecutorRegistry] = None,
        rebuild_handler: Optional[RebuildHandler] = None,
        redis_client: Optional[redis.Redis] = None,
    ):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config=config)

        self.redis = redis_client or redis.from_url(
            self.config.redis_url,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        self.registry = registry or self._build_registry()
        self.store = store or self._build_store()
        self.executors = executors or build_default_executors(self.redis)

        self.dispatcher = WebhookRebuildDispatcher(
            self.config.rebuild_webhook_url,
            timeout=self.config.rebuild_timeout_seconds,
        )
        self.scheduler = RebuildScheduler(
            rebuild_handler or self.dispatcher,
            queue_size=self.config.rebuild_queue_size,
            metrics=self.metrics,
        )
        self.coordinator = FlushCoordinator(
            self.registry,
            self.executors,
            self.store,
            self.scheduler,
            layer_timeout_seconds=self.config.layer_timeout_seconds,
            metrics=self.metrics,
        )
        self.auto_flush: Optional[AutoFlushWorker] = None
        if self.config.auto_flush_enabled:
            self.auto_flush = AutoFlushWorker(
                self.coordinator,
                check_interval_seconds=self.config.auto_flush_check_seconds,
            )
        self.authorizer = HeaderAuthorizer(self.config.privileged_roles)

        self._setup_cache_flush_routes()
        self._setup_lifecycle()

    def _build_registry(self) -> LayerRegistry:
        if self.config.registry_backend == "postgres":
            return PostgresLayerRegistry(self.config.postgres_dsn)
        return FileLayerRegistry(self.config.layer_registry_path)

    def _build_store(self) -> FlushStore:
        if self.config.storage_backend == "postgres":
            return PostgresFlushStore(self.config.postgres_dsn)
        return InMemoryFlushStore()

    def _setup_cache_flush_routes(self):
        """Set up cache flush routes."""

        require_operator = self.authorizer.require_operator

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Cache Flush Service",
                "version": self.version,
                "capabilities": ["flush", "audit", "rebuild", "auto_flush"]
            }

        @self.app.post("/cache/flush", response_model=FlushResponse)
        async def flush_caches(request: FlushRequest, principal: Principal = Depends(require_operator)):
            """Flush the requested cache layers in priority order."""
            set_user_context(principal.user_id)
            result = await self.coordinator.run_flush(
                request.cache_layers,
                operation_type=request.operation_type,
                force=request.force,
                initiator=principal.user_id,
            )
            return result.to_dict()

        @self.app.get("/cache/operations")
        async def list_operations(
            limit: int = Query(10, ge=1, le=100, description="Number of operations to return"),
            principal: Principal = Depends(require_operator),
        ):
            """Most recent flush operations, newest first."""
            operations = await self.store.list_operations(limit)
            return {
                "operations": [op.to_dict() for op in operations],
                "count": len(operations)
            }

        @self.app.get("/cache/operations/{operation_id}")
        async def get_operation(operation_id: str, principal: Principal = Depends(require_operator)):
            """One flush operation with its per-layer status rows."""
            operation = await self.store.get_operation(operation_id)
            if operation is None:
                raise NotFoundError(
                    f"Flush operation {operation_id} not found",
                    details={"operation_id": operation_id},
                )
            statuses = await self.store.list_layer_statuses(operation_id)
            body = operation.to_dict()
            body["layers"] = [s.to_dict() for s in statuses]
            return body

        @self.app.get("/cache/layers")
        async def list_layers(principal: Principal = Depends(require_operator)):
            """Configured cache layers ordered by flush priority."""
            configs = await self.registry.list_configs()
            configs = sorted(configs, key=lambda c: (c.flush_priority, c.layer_id))
            layers = []
            for config in configs:
                entry = config.to_dict()
                entry["executor_registered"] = config.layer_id in self.executors
                layers.append(entry)
            return {"layers": layers, "count": len(layers)}

    def _setup_lifecycle(self):
        @self.app.on_event("startup")
        async def startup_event():
            await self.start()

        @self.app.on_event("shutdown")
        async def shutdown_event():
            await self.stop()

    async def _check_dependencies(self):
        """Check cache flush service dependencies."""
        dependencies = {}

        try:
            dependencies["redis"] = "ok" if await self.redis.ping() else "error"
        except Exception:
            dependencies["redis"] = "error"

        try:
            dependencies["store"] = "ok" if await self.store.health_check() else "error"
        except Exception:
            dependencies["store"] = "error"

        return dependencies

    async def start(self):
        """Start cache flush service components."""
        await self.store.start()
        await self.registry.start()
        await self.scheduler.start()
        if self.auto_flush:
            await self.auto_flush.start()
        self.logger.info(
            "Cache flush service started",
            storage_backend=self.config.storage_backend,
            registry_backend=self.config.registry_backend,
            executors=self.executors.layers(),
            auto_flush=self.auto_flush is not None,
        )

    async def stop(self):
        """Stop cache flush service components."""
        if self.auto_flush:
            await self.auto_flush.stop()
        await self.scheduler.stop()
        await self.executors.close()
        await self.dispatcher.close()
        await self.registry.stop()
        await self.store.stop()
        await self.redis.aclose()
        self.logger.info("Cache flush service stopped")


def create_app(config: Optional[ServiceConfig] = None):
    """Create cache flush service application."""
    service = CacheFlushService(config or get_config(SERVICE_NAME, SERVICE_PORT))
    return service.app


if __name__ == "__main__":
    service = CacheFlushService()
    service.run()

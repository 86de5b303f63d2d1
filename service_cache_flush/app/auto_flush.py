"""
Periodic automatic flushing of layers that opt in via ``auto_flush_enabled``.
"""

import asyncio
from datetime import datetime, timedelta
from typing import List, Optional

from shared.errors import CacheFlushException
from shared.logging import get_logger

from .coordinator import FlushCoordinator
from .models import FlushResult, OperationType, utc_now

AUTO_FLUSH_INITIATOR = "system:auto-flush"


class AutoFlushWorker:
    """Runs an ``auto`` flush for layers whose auto-flush interval elapsed."""

    def __init__(self, coordinator: FlushCoordinator, *, check_interval_seconds: int = 300):
        self.coordinator = coordinator
        self.check_interval_seconds = check_interval_seconds
        self.logger = get_logger("cache-flush.auto_flush")
        self._worker_task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._worker_task = asyncio.create_task(self._loop())
        self.logger.info("Auto flush worker started", check_interval_seconds=self.check_interval_seconds)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None
        self.logger.info("Auto flush worker stopped")

    async def due_layers(self, now: Optional[datetime] = None) -> List[str]:
        """Active auto-flush layers not cleared within their interval."""
        now = now or utc_now()
        due: List[str] = []
        for config in await self.coordinator.registry.list_configs():
            if not (config.is_active and config.auto_flush_enabled):
                continue
            last = await self.coordinator.store.last_cleared_at(config.layer_id)
            if last is None or now - last >= timedelta(hours=config.auto_flush_interval_hours):
                due.append(config.layer_id)
        return due

    async def run_once(self, now: Optional[datetime] = None) -> Optional[FlushResult]:
        layers = await self.due_layers(now)
        if not layers:
            return None
        self.logger.info("Auto flush due", layers=layers)
        return await self.coordinator.run_flush(
            layers,
            operation_type=OperationType.AUTO,
            force=False,
            initiator=AUTO_FLUSH_INITIATOR,
        )

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except CacheFlushException as e:
                self.logger.error("Auto flush failed", code=e.code, error=e.message)
            except Exception as e:
                self.logger.error("Unexpected auto flush error", error=str(e), exc_info=True)
            await asyncio.sleep(self.check_interval_seconds)

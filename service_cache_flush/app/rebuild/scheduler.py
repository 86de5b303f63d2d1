"""
Rebuild scheduler: follow-up work for cache layers that were cleared.

``schedule_rebuild`` never awaits anything; it drops a job on an asyncio queue
and returns. A background worker drains the queue and runs each rebuild task
through the configured handler. Handler failures are logged and counted only;
they never reach the flush caller or the persisted operation.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TYPE_CHECKING

from shared.logging import get_logger

from ..models import utc_now

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


REBUILD_TASKS: Dict[str, Tuple[str, ...]] = {
    "component_cache": ("rebuild_dashboard_widgets", "rebuild_ui_modules"),
    "ai_memory_cache": ("warm_ai_prompt_cache", "reload_ai_models"),
    "api_cache": ("refetch_government_data", "reinitialize_api_fetchers"),
    "cdn_asset_cache": ("republish_static_assets",),
    "security_role_cache": ("refresh_user_sessions", "reload_admin_permissions"),
}


@dataclass
class RebuildJob:
    """Rebuild work queued for one flush operation."""
    layers: List[str]
    tasks: List[str]
    operation_id: Optional[str] = None
    enqueued_at: datetime = field(default_factory=utc_now)


RebuildHandler = Callable[[str, RebuildJob], Awaitable[None]]


class RebuildScheduler:
    """Fire-and-forget dispatcher of rebuild tasks."""

    def __init__(
        self,
        handler: RebuildHandler,
        *,
        task_table: Optional[Mapping[str, Sequence[str]]] = None,
        queue_size: int = 1000,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.handler = handler
        self.task_table = dict(task_table if task_table is not None else REBUILD_TASKS)
        self.metrics = metrics
        self.logger = get_logger("cache-flush.rebuild")
        self.queue: "asyncio.Queue[RebuildJob]" = asyncio.Queue(maxsize=queue_size)
        self.processing_task: Optional[asyncio.Task] = None
        self.running = False
        self.stats = {"jobs_enqueued": 0, "jobs_dropped": 0, "tasks_succeeded": 0, "tasks_failed": 0}

    def tasks_for(self, layers: Iterable[str]) -> List[str]:
        """Map cleared layers to rebuild task ids, de-duplicated, in layer order."""
        tasks: List[str] = []
        for layer in layers:
            for task in self.task_table.get(layer, ()):
                if task not in tasks:
                    tasks.append(task)
        return tasks

    def schedule_rebuild(self, cleared_layers: Iterable[str], *, operation_id: Optional[str] = None) -> Optional[RebuildJob]:
        """Queue rebuild work for ``cleared_layers`` and return immediately."""
        layers = list(dict.fromkeys(cleared_layers))
        tasks = self.tasks_for(layers)
        if not tasks:
            self.logger.debug("No rebuild tasks mapped for cleared layers", layers=layers, operation_id=operation_id)
            return None

        job = RebuildJob(layers=layers, tasks=tasks, operation_id=operation_id)
        try:
            self.queue.put_nowait(job)
        except asyncio.QueueFull:
            self.stats["jobs_dropped"] += 1
            self.logger.warning("Rebuild queue full, dropping job", operation_id=operation_id, tasks=tasks)
            return None

        self.stats["jobs_enqueued"] += 1
        self._update_depth()
        self.logger.info("Rebuild scheduled", operation_id=operation_id, layers=layers, tasks=tasks)
        return job

    async def start(self):
        """Start the rebuild worker."""
        if self.running:
            return
        self.running = True
        self.processing_task = asyncio.create_task(self._process_queue())
        self.logger.info("Rebuild scheduler started")

    async def stop(self):
        """Stop the rebuild worker; jobs still queued are abandoned."""
        self.running = False
        if self.processing_task:
            self.processing_task.cancel()
            try:
                await self.processing_task
            except asyncio.CancelledError:
                pass
            self.processing_task = None

        if not self.queue.empty():
            self.logger.warning("Rebuild scheduler stopped with pending jobs", pending=self.queue.qsize())
        self.logger.info("Rebuild scheduler stopped")

    async def drain(self):
        """Wait until every queued job has been processed."""
        await self.queue.join()

    async def _process_queue(self):
        while self.running:
            job = await self.queue.get()
            try:
                await self._run_job(job)
            finally:
                self.queue.task_done()
                self._update_depth()

    async def _run_job(self, job: RebuildJob):
        for task in job.tasks:
            try:
                await self.handler(task, job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats["tasks_failed"] += 1
                self._record(task, "error")
                self.logger.error(
                    "Rebuild task failed",
                    task=task,
                    operation_id=job.operation_id,
                    error=str(e),
                )
            else:
                self.stats["tasks_succeeded"] += 1
                self._record(task, "success")
                self.logger.info("Rebuild task completed", task=task, operation_id=job.operation_id)

    def _record(self, task: str, status: str):
        if self.metrics:
            self.metrics.increment_counter("cache_rebuild_tasks_total", task=task, status=status)

    def _update_depth(self):
        if self.metrics:
            self.metrics.set_gauge("cache_rebuild_queue_depth", self.queue.qsize())

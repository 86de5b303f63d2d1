"""
Rebuild scheduling for cleared cache layers.
"""

from .dispatcher import WebhookRebuildDispatcher
from .scheduler import REBUILD_TASKS, RebuildJob, RebuildScheduler

__all__ = ["REBUILD_TASKS", "RebuildJob", "RebuildScheduler", "WebhookRebuildDispatcher"]

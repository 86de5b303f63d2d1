"""
Flush executors: one adapter per cache layer type.

The coordinator only ever talks to ``ExecutorRegistry``; adding a layer means
registering a new ``FlushExecutor`` subclass and a matching config row.
"""

from typing import Optional

import httpx
import redis.asyncio as redis

from .base import ExecutorRegistry, FlushExecutor
from .cdn import CdnAssetCacheExecutor
from .redis_layers import (
    AIMemoryCacheExecutor,
    ApiCacheExecutor,
    ComponentCacheExecutor,
    RedisPrefixExecutor,
    SecurityRoleCacheExecutor,
)


def build_default_executors(
    redis_client: redis.Redis,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ExecutorRegistry:
    """Register the executors for the built-in cache layers."""
    registry = ExecutorRegistry()
    registry.register(ComponentCacheExecutor(redis_client))
    registry.register(AIMemoryCacheExecutor(redis_client))
    registry.register(ApiCacheExecutor(redis_client))
    registry.register(CdnAssetCacheExecutor(http_client))
    registry.register(SecurityRoleCacheExecutor(redis_client))
    return registry


__all__ = [
    "AIMemoryCacheExecutor",
    "ApiCacheExecutor",
    "CdnAssetCacheExecutor",
    "ComponentCacheExecutor",
    "ExecutorRegistry",
    "FlushExecutor",
    "RedisPrefixExecutor",
    "SecurityRoleCacheExecutor",
    "build_default_executors",
]

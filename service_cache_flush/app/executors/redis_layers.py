"""
Redis-backed cache layer executors.

Each layer lives under its own key prefixes in the shared Redis instance.
Keys are found with SCAN (never KEYS) and removed with UNLINK in batches.
"""

import re
from typing import Any, Iterable, List, Mapping, Sequence, Set, Tuple

import redis.asyncio as redis

from .base import FlushExecutor

DEFAULT_SCAN_COUNT = 500
DEFAULT_BATCH_SIZE = 500

GLOB_SPECIAL = re.compile(r"([\\*?\[\]])")


def escape_glob(prefix: str) -> str:
    """Escape Redis MATCH metacharacters so ``prefix`` matches literally."""
    return GLOB_SPECIAL.sub(r"\\\1", prefix)


class RedisPrefixExecutor(FlushExecutor):
    """Deletes every key under a set of prefixes."""

    default_prefixes: Sequence[str] = ()

    def __init__(self, client: redis.Redis, *, batch_size: int = DEFAULT_BATCH_SIZE, **kwargs):
        super().__init__(**kwargs)
        self.client = client
        self.batch_size = max(1, batch_size)

    def prefixes(self, config_metadata: Mapping[str, Any]) -> List[str]:
        configured = config_metadata.get("key_prefixes")
        return list(configured) if configured else list(self.default_prefixes)

    def preserved_keys(self, config_metadata: Mapping[str, Any]) -> Set[str]:
        return set()

    async def _clear(self, layer_id: str, config_metadata: Mapping[str, Any], force: bool) -> Tuple[int, int]:
        prefixes = self.prefixes(config_metadata)
        if not prefixes:
            raise ValueError(f"No key prefixes configured for layer '{layer_id}'")

        preserve = self.preserved_keys(config_metadata)
        measure = bool(config_metadata.get("measure_size", True))
        scan_count = int(config_metadata.get("scan_count") or DEFAULT_SCAN_COUNT)

        items = 0
        size_bytes = 0
        for prefix in prefixes:
            batch: List[Any] = []
            async for key in self.client.scan_iter(match=f"{escape_glob(prefix)}*", count=scan_count):
                if self._key_text(key) in preserve:
                    continue
                batch.append(key)
                if len(batch) >= self.batch_size:
                    cleared, size = await self._delete_batch(batch, measure)
                    items += cleared
                    size_bytes += size
                    batch = []
            if batch:
                cleared, size = await self._delete_batch(batch, measure)
                items += cleared
                size_bytes += size

        self.logger.info(
            "Redis layer cleared",
            layer=layer_id,
            prefixes=prefixes,
            items_cleared=items,
            bytes_cleared=size_bytes,
        )
        await self._after_clear(layer_id, config_metadata)
        return items, size_bytes

    async def _delete_batch(self, keys: Sequence[Any], measure: bool) -> Tuple[int, int]:
        size_bytes = 0
        if measure:
            for key in keys:
                size_bytes += await self.client.memory_usage(key) or 0
        deleted = await self.client.unlink(*keys)
        return int(deleted or 0), size_bytes

    async def _after_clear(self, layer_id: str, config_metadata: Mapping[str, Any]) -> None:
        """Hook for layer-specific follow-up once the keys are gone."""

    @staticmethod
    def _key_text(key: Any) -> str:
        return key.decode("utf-8", "replace") if isinstance(key, bytes) else str(key)


class ComponentCacheExecutor(RedisPrefixExecutor):
    """Rendered UI components and dashboard widgets.

    After clearing, bumps a generation counter so browser-side component
    caches keyed on it are invalidated as well.
    """

    layer_id = "component_cache"
    default_prefixes = ("component:", "widget:")
    GENERATION_KEY = "cache_generation:component_cache"

    async def _after_clear(self, layer_id: str, config_metadata: Mapping[str, Any]) -> None:
        generation = await self.client.incr(config_metadata.get("generation_key") or self.GENERATION_KEY)
        self.logger.debug("Component cache generation bumped", generation=generation)


class AIMemoryCacheExecutor(RedisPrefixExecutor):
    """AI session memory and cached model responses."""

    layer_id = "ai_memory_cache"
    default_prefixes = ("ai_response:", "ai_session:")


class ApiCacheExecutor(RedisPrefixExecutor):
    """Cached responses of external API fetchers."""

    layer_id = "api_cache"
    default_prefixes = ("api:",)


class SecurityRoleCacheExecutor(RedisPrefixExecutor):
    """Sessions, role assignments and permission lookups.

    ``preserve_keys`` lists exact keys that must survive, typically the
    service account sessions that would otherwise lock operators out.
    """

    layer_id = "security_role_cache"
    default_prefixes = ("session:", "role:", "permission:")

    def preserved_keys(self, config_metadata: Mapping[str, Any]) -> Set[str]:
        preserve: Iterable[str] = config_metadata.get("preserve_keys") or ()
        return set(preserve)

"""
Layer registry: the configured set of flushable cache layers.
"""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from shared.errors import ConfigResolutionError
from shared.logging import get_logger

from ..models import CacheLayerConfig


DEFAULT_DATA_FILE = Path(__file__).resolve().parent / "data" / "cache_layers.json"


def select_layers(configs: Iterable[CacheLayerConfig], requested: Sequence[str]) -> List[CacheLayerConfig]:
    """Keep active configs that were requested, ordered by flush priority.

    Ties on priority fall back to the layer id so ordering stays deterministic.
    """
    wanted = set(requested)
    selected = [c for c in configs if c.is_active and c.layer_id in wanted]
    selected.sort(key=lambda c: (c.flush_priority, c.layer_id))
    return selected


def config_from_mapping(row: Dict[str, Any]) -> CacheLayerConfig:
    """Build a CacheLayerConfig from a JSON object or database row."""
    layer_id = row.get("layer_id") or row.get("cache_layer")
    if not layer_id:
        raise ValueError("cache layer entry is missing 'layer_id'")

    metadata = row.get("config_metadata") or {}
    if isinstance(metadata, str):
        metadata = json.loads(metadata)

    return CacheLayerConfig(
        layer_id=str(layer_id),
        flush_priority=int(row.get("flush_priority") if row.get("flush_priority") is not None else 100),
        is_active=bool(row.get("is_active", True)),
        config_metadata=dict(metadata),
        auto_flush_enabled=bool(row.get("auto_flush_enabled") or False),
        auto_flush_interval_hours=int(row.get("auto_flush_interval_hours") or 24),
        max_size_mb=row.get("max_size_mb"),
        retention_hours=row.get("retention_hours"),
    )


def check_unique_active(configs: Iterable[CacheLayerConfig]) -> None:
    seen = set()
    for config in configs:
        if not config.is_active:
            continue
        if config.layer_id in seen:
            raise ConfigResolutionError(
                f"Duplicate active cache layer '{config.layer_id}'",
                details={"layer_id": config.layer_id},
            )
        seen.add(config.layer_id)


class LayerRegistry(ABC):
    """Read-only source of CacheLayerConfig rows."""

    async def start(self) -> None:
        """Open connections. No-op for in-process registries."""

    async def stop(self) -> None:
        """Release connections."""

    @abstractmethod
    async def list_configs(self) -> List[CacheLayerConfig]:
        """Return every configured layer ordered by flush priority.

        Raises:
            ConfigResolutionError: If the underlying source cannot be read.
        """

    async def resolve(self, layer_ids: Sequence[str]) -> List[CacheLayerConfig]:
        """Return active configs for the requested ids in flush order.

        Unknown and inactive ids are dropped without error.
        """
        return select_layers(await self.list_configs(), layer_ids)


class FileLayerRegistry(LayerRegistry):
    """
    Loads layer configuration from a JSON document.

    The document is ``{"layers": [{"layer_id": ..., "flush_priority": ...}, ...]}``.
    Unlike cache-warm datasets a broken registry file is an error: flushing the
    wrong set of layers is worse than refusing to flush.
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self._path = Path(config_path) if config_path else DEFAULT_DATA_FILE
        self._lock = threading.Lock()
        self._configs: Optional[List[CacheLayerConfig]] = None
        self.logger = get_logger("cache-flush.registry")

    @property
    def path(self) -> Path:
        """Return the resolved path to the registry file."""
        return self._path

    def refresh(self) -> None:
        """Drop the cached configuration so the next read hits disk."""
        with self._lock:
            self._configs = None

    async def list_configs(self) -> List[CacheLayerConfig]:
        with self._lock:
            if self._configs is None:
                self._configs = self._load()
            return list(self._configs)

    def _load(self) -> List[CacheLayerConfig]:
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
            configs = [config_from_mapping(row) for row in payload.get("layers", [])]
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            self.logger.error("Failed to load cache layer registry", path=str(self._path), error=str(exc))
            raise ConfigResolutionError(
                f"Unable to read cache layer registry at {self._path}",
                details={"error": str(exc)},
            ) from exc

        check_unique_active(configs)
        configs.sort(key=lambda c: (c.flush_priority, c.layer_id))
        self.logger.info("Cache layer registry loaded", path=str(self._path), layers=len(configs))
        return configs


class StaticLayerRegistry(LayerRegistry):
    """In-memory registry, mostly for embedding and tests."""

    def __init__(self, configs: Iterable[CacheLayerConfig]):
        self._configs = sorted(configs, key=lambda c: (c.flush_priority, c.layer_id))
        check_unique_active(self._configs)

    async def list_configs(self) -> List[CacheLayerConfig]:
        return list(self._configs)

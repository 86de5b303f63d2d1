"""
Flush executor interface and registry.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from shared.errors import LayerError, LayerFlushError, LayerSkipped
from shared.logging import get_logger

BYTES_PER_MB = 1024 * 1024


class FlushExecutor(ABC):
    """Clears one kind of cache layer.

    Subclasses implement ``_clear`` and return ``(items_cleared, bytes_cleared)``.
    ``flush`` wraps it with the shared contract: an optional cooldown that
    ``force`` bypasses, conversion of every fault into ``LayerFlushError``, and
    reporting the size in megabytes.
    """

    #: Layer id this executor is registered under by default.
    layer_id: str = ""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._last_flush_at: Optional[float] = None
        self.logger = get_logger(f"cache-flush.executor.{self.layer_id or 'custom'}")

    async def flush(self, layer_id: str, config_metadata: Mapping[str, Any], force: bool) -> Tuple[int, float]:
        """Flush ``layer_id`` and return ``(items_cleared, size_cleared_mb)``.

        Raises:
            LayerSkipped: The cooldown window is still open and ``force`` is false.
            LayerFlushError: Anything went wrong while clearing.
        """
        self._check_cooldown(layer_id, config_metadata, force)

        try:
            items, size_bytes = await self._clear(layer_id, config_metadata, force)
        except LayerError:
            raise
        except Exception as exc:
            raise LayerFlushError(layer_id, str(exc) or exc.__class__.__name__) from exc

        self._last_flush_at = self._clock()
        return max(0, int(items)), round(max(0, size_bytes) / BYTES_PER_MB, 3)

    def _check_cooldown(self, layer_id: str, config_metadata: Mapping[str, Any], force: bool) -> None:
        cooldown = float(config_metadata.get("cooldown_seconds") or 0)
        if force or cooldown <= 0 or self._last_flush_at is None:
            return
        elapsed = self._clock() - self._last_flush_at
        if elapsed < cooldown:
            remaining = cooldown - elapsed
            raise LayerSkipped(
                layer_id,
                f"Cooldown active, {remaining:.0f}s remaining",
                details={"cooldown_seconds": cooldown, "remaining_seconds": round(remaining, 1)},
            )

    @abstractmethod
    async def _clear(self, layer_id: str, config_metadata: Mapping[str, Any], force: bool) -> Tuple[int, int]:
        """Clear the layer; return ``(items_cleared, bytes_cleared)``."""

    async def close(self) -> None:
        """Release executor-owned resources."""


class ExecutorRegistry:
    """Maps layer ids to executors."""

    def __init__(self):
        self._executors: Dict[str, FlushExecutor] = {}

    def register(self, executor: FlushExecutor, layer_id: Optional[str] = None) -> None:
        key = layer_id or executor.layer_id
        if not key:
            raise ValueError(f"{executor.__class__.__name__} has no layer id to register under")
        self._executors[key] = executor

    def get(self, layer_id: str) -> FlushExecutor:
        executor = self._executors.get(layer_id)
        if executor is None:
            raise LayerFlushError(layer_id, f"No flush executor registered for layer '{layer_id}'")
        return executor

    def layers(self) -> List[str]:
        return sorted(self._executors)

    def __contains__(self, layer_id: str) -> bool:
        return layer_id in self._executors

    async def close(self) -> None:
        for executor in self._executors.values():
            await executor.close()

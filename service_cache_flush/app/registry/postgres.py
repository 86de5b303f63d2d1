"""
PostgreSQL-backed layer registry.
"""

from typing import Any, Iterable, List, Optional, Sequence

import asyncpg

from shared.errors import ConfigResolutionError
from shared.logging import get_logger

from ..models import CacheLayerConfig
from .loader import LayerRegistry, check_unique_active, config_from_mapping

DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class PostgresLayerRegistry(LayerRegistry):
    """Reads the system_cache_config table maintained by administrators."""

    def __init__(self, dsn: str, *, pool: Optional[asyncpg.Pool] = None):
        self.dsn = dsn
        self.logger = get_logger("cache-flush.registry.postgres")
        self.pool: Optional[asyncpg.Pool] = pool

    async def start(self):
        try:
            if self.pool is None:
                self.pool = await asyncpg.create_pool(self.dsn, min_size=1, max_size=5, command_timeout=30)
            self.logger.info("PostgreSQL layer registry started")
        except DB_ERRORS as e:
            self.logger.error("Failed to start PostgreSQL layer registry", error=str(e))
            raise ConfigResolutionError("Unable to connect to layer registry", details={"error": str(e)}) from e

    async def stop(self):
        if self.pool:
            await self.pool.close()

    async def list_configs(self) -> List[CacheLayerConfig]:
        rows = await self._fetch("""
            SELECT * FROM system_cache_config ORDER BY flush_priority ASC, cache_layer ASC
        """)
        return self._to_configs(rows)

    async def resolve(self, layer_ids: Sequence[str]) -> List[CacheLayerConfig]:
        """Filter in SQL so only the requested active rows are transferred."""
        rows = await self._fetch("""
            SELECT * FROM system_cache_config
            WHERE is_active = TRUE AND cache_layer = ANY($1::text[])
            ORDER BY flush_priority ASC, cache_layer ASC
        """, list(layer_ids))
        return self._to_configs(rows)

    async def _fetch(self, query: str, *args):
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetch(query, *args)
        except DB_ERRORS as e:
            self.logger.error("Error reading layer registry", error=str(e))
            raise ConfigResolutionError("Unable to read layer registry", details={"error": str(e)}) from e

    def _to_configs(self, rows: Iterable[Any]) -> List[CacheLayerConfig]:
        try:
            configs = [config_from_mapping(dict(row)) for row in rows]
        except (ValueError, TypeError) as e:
            self.logger.error("Malformed layer registry row", error=str(e))
            raise ConfigResolutionError("Malformed layer registry row", details={"error": str(e)}) from e
        check_unique_active(configs)
        return configs

"""
CDN / static asset cache executor.
"""

import os
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx

from shared.errors import LayerFlushError
from shared.retry import RetryConfig, RetryError, retry_call

from .base import FlushExecutor


class CdnAssetCacheExecutor(FlushExecutor):
    """Purges edge-cached assets through the CDN purge API.

    ``config_metadata`` keys:
        purge_url: Endpoint accepting ``POST {"paths": [...], "force": bool}``.
        purge_paths: Paths to purge, default ``["/*"]``.
        token_env: Name of an environment variable holding a bearer token.
        max_attempts: Attempts on transport errors, default 2.

    The purge API answers with ``{"purged_items": int, "purged_bytes": int}``;
    missing counters are reported as zero.
    """

    layer_id = "cdn_asset_cache"

    def __init__(self, client: Optional[httpx.AsyncClient] = None, *, timeout: float = 15.0, **kwargs):
        super().__init__(**kwargs)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _clear(self, layer_id: str, config_metadata: Mapping[str, Any], force: bool) -> Tuple[int, int]:
        purge_url = config_metadata.get("purge_url")
        if not purge_url:
            raise LayerFlushError(layer_id, "purge_url not configured for CDN layer")

        body = {"paths": list(config_metadata.get("purge_paths") or ["/*"]), "force": force}
        retry_config = RetryConfig(
            max_attempts=int(config_metadata.get("max_attempts") or 2),
            base_delay=0.5,
            max_delay=5.0,
        )

        try:
            response = await retry_call(
                self._purge,
                purge_url,
                body,
                self._headers(config_metadata),
                exceptions=(httpx.TransportError,),
                config=retry_config,
            )
        except RetryError as e:
            raise LayerFlushError(layer_id, f"CDN purge unreachable: {e.last_exception}") from e

        if response.status_code >= 400:
            raise LayerFlushError(
                layer_id,
                f"CDN purge rejected with HTTP {response.status_code}",
                details={"status_code": response.status_code, "body": response.text[:500]},
            )

        payload = response.json() if response.content else {}
        items = int(payload.get("purged_items", 0))
        size_bytes = int(payload.get("purged_bytes", 0))
        self.logger.info("CDN purge accepted", layer=layer_id, purge_url=purge_url, items_cleared=items)
        return items, size_bytes

    async def _purge(self, url: str, body: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        return await self.client.post(url, json=body, headers=headers)

    @staticmethod
    def _headers(config_metadata: Mapping[str, Any]) -> Dict[str, str]:
        token_env = config_metadata.get("token_env")
        token = os.getenv(token_env) if token_env else None
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

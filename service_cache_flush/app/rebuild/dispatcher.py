"""
Default rebuild task handler.
"""

from typing import Optional

import httpx

from shared.logging import get_logger
from shared.retry import RetryConfig, retry_call

from .scheduler import RebuildJob


class WebhookRebuildDispatcher:
    """Posts each rebuild task to a webhook owned by the rebuilding services.

    Without a webhook URL the task is only logged, which keeps local
    deployments self-contained.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.webhook_url = webhook_url
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=1.0, max_delay=10.0)
        self.logger = get_logger("cache-flush.rebuild.dispatcher")

    async def __call__(self, task: str, job: RebuildJob) -> None:
        if not self.webhook_url:
            self.logger.info(
                "Rebuild task dispatched locally (no webhook configured)",
                task=task,
                operation_id=job.operation_id,
                layers=job.layers,
            )
            return

        payload = {
            "task": task,
            "layers": job.layers,
            "operation_id": job.operation_id,
            "requested_at": job.enqueued_at.isoformat(),
        }
        await retry_call(
            self._post,
            payload,
            exceptions=(httpx.TransportError, httpx.HTTPStatusError),
            config=self.retry_config,
        )

    async def _post(self, payload) -> None:
        response = await self.client.post(self.webhook_url, json=payload)
        response.raise_for_status()

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

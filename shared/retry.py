"""
Retries for outbound calls (CDN purge API, rebuild webhook).

Only the exception types a caller names are retried; everything else
propagates on the first attempt.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from shared.logging import get_logger


@dataclass(frozen=True)
class RetryConfig:
    """Exponential backoff policy.

    The delay before attempt ``n + 1`` is ``base_delay * multiplier ** (n - 1)``,
    capped at ``max_delay`` and spread by up to ``jitter_ratio`` either way.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_ratio: float = 0.1

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter and delay > 0:
            spread = delay * self.jitter_ratio
            delay += random.uniform(-spread, spread)
        return max(0.0, delay)


class RetryError(Exception):
    """Raised when every attempt failed with a retryable exception."""

    def __init__(self, message: str, last_exception: BaseException, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


async def retry_call(func: Callable[..., Awaitable[Any]],
                     *args,
                     exceptions: Tuple[Type[BaseException], ...] = (Exception,),
                     config: Optional[RetryConfig] = None,
                     **kwargs) -> Any:
    """Await ``func(*args, **kwargs)`` until it succeeds or attempts run out.

    Raises:
        RetryError: The last attempt failed with one of ``exceptions``.
    """
    config = config or RetryConfig()
    attempts = max(1, config.max_attempts)
    name = getattr(func, "__qualname__", repr(func))
    logger = get_logger("retry")

    for attempt in range(1, attempts + 1):
        try:
            result = await func(*args, **kwargs)
        except exceptions as e:
            if attempt == attempts:
                logger.error("Giving up after retries", call=name, attempts=attempts, error=str(e))
                raise RetryError(f"{name} failed after {attempts} attempts", last_exception=e, attempts=attempts) from e

            delay = config.delay_for(attempt)
            logger.warning("Call failed, retrying", call=name, attempt=attempt, delay=round(delay, 3), error=str(e))
            await asyncio.sleep(delay)
        else:
            if attempt > 1:
                logger.info("Call succeeded after retry", call=name, attempt=attempt)
            return result

"""
Retry-with-backoff for idempotent backend operations.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from cortex.sdk.errors import CortexConnectionError

logger = logging.getLogger("Cortex.sdk.retry")

T = TypeVar("T")


def is_transient_network_error(exc: BaseException) -> bool:
    """Connection refused/reset, DNS failure and timeouts. Mapped HTTP errors are not."""
    return isinstance(exc, CortexConnectionError)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_jitter: float = 1.0

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        return self.base_delay * (2 ** attempt) + rng() * self.max_jitter


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    is_retryable: Callable[[BaseException], bool] = is_transient_network_error,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
    label: str = "operation",
) -> T:
    """
    Run ``operation`` and retry it up to ``policy.max_retries`` more times.

    Only errors accepted by ``is_retryable`` are retried; anything else
    propagates on the spot. After the final attempt the last error propagates.
    """
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if attempt >= policy.max_retries or not is_retryable(exc):
                raise
            delay = policy.delay_for(attempt, rng)
            logger.warning(
                "Retrying %s after transient failure (attempt %d/%d, delay %.2fs): %s",
                label,
                attempt + 1,
                policy.max_retries,
                delay,
                exc,
            )
            attempt += 1
            await sleep(delay)

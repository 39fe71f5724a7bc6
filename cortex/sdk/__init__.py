"""
Cortex SDK public exports.
"""

from cortex.sdk.client import AsyncCortexClient, map_http_error
from cortex.sdk.errors import CortexAPIError, CortexConnectionError, CortexError, CortexTimeoutError
from cortex.sdk.retry import RetryPolicy, retry_async

__all__ = [
    "AsyncCortexClient",
    "map_http_error",
    "CortexError",
    "CortexConnectionError",
    "CortexTimeoutError",
    "CortexAPIError",
    "RetryPolicy",
    "retry_async",
]

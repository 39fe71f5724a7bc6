"""
Cortex: MCP adapter for the Cortex context backend
"""

from cortex.sdk import (
    AsyncCortexClient,
    CortexAPIError,
    CortexConnectionError,
    CortexError,
    CortexTimeoutError,
)
from cortex.version import __version__

__all__ = [
    "__version__",
    "AsyncCortexClient",
    "CortexError",
    "CortexConnectionError",
    "CortexTimeoutError",
    "CortexAPIError",
]

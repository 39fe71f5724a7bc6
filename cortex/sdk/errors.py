"""
Cortex SDK exceptions.

Every error carries the protocol error code it maps to, so the MCP layer
can turn it into an envelope without re-deriving the mapping.
"""

from __future__ import annotations

from typing import Any, Optional

from cortex.mcp.protocol import INTERNAL_ERROR


class CortexError(RuntimeError):
    """Base class for SDK errors."""

    def __init__(self, message: str, *, code: int = INTERNAL_ERROR, data: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data


class CortexConnectionError(CortexError):
    """Raised when the SDK cannot reach the Cortex backend (retryable)."""


class CortexTimeoutError(CortexConnectionError):
    """Raised when a backend call exceeds its per-call timeout."""


class CortexAPIError(CortexError):
    """Raised when the backend returns a non-2xx response."""

    def __init__(
        self,
        message: str,
        *,
        code: int = INTERNAL_ERROR,
        data: Optional[Any] = None,
        status_code: Optional[int] = None,
        path: Optional[str] = None,
        payload: Optional[Any] = None,
    ) -> None:
        super().__init__(message, code=code, data=data)
        self.status_code = status_code
        self.path = path
        self.payload = payload

    def __str__(self) -> str:
        status_hint = f" (status={self.status_code})" if self.status_code is not None else ""
        path_hint = f" [{self.path}]" if self.path else ""
        return f"{self.message}{status_hint}{path_hint}"

"""
Cortex MCP Protocol Constants & Errors
"""

from typing import Any, Dict, Optional

JSONRPC_VERSION = "2.0"

# Newest first. The adapter's preferred default is used when a client asks
# for a version that is not listed here.
SUPPORTED_PROTOCOL_VERSIONS = ("2025-06-18", "2025-03-26", "2024-11-05", "2024-10-07")
DEFAULT_PROTOCOL_VERSION = "2024-11-05"

# Standard JSON-RPC Error Codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Adapter Specific Error Codes
SERVER_ERROR = -32000
UNAUTHORIZED = -32001
FORBIDDEN = -32002
NOT_FOUND = -32003
RATE_LIMITED = -32004
SERVICE_UNAVAILABLE = -32005
SERVER_SHUTTING_DOWN = -32006

# Sentinel id for responses to messages whose id could not be determined.
UNKNOWN_ID = None


def negotiate_protocol_version(requested: Optional[str]) -> str:
    if requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return DEFAULT_PROTOCOL_VERSION


class McpError(Exception):
    """A protocol-level failure that becomes a JSON-RPC error envelope."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error

    def __repr__(self) -> str:
        return f"McpError(code={self.code}, message={self.message!r})"


def make_result(msg_id: Any, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": msg_id, "result": result}


def make_error(msg_id: Any, code: int, message: str, data: Optional[Any] = None) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": msg_id, "error": McpError(code, message, data).to_dict()}


def is_request(message: Any) -> bool:
    return (
        isinstance(message, dict)
        and message.get("jsonrpc") == JSONRPC_VERSION
        and isinstance(message.get("method"), str)
        and "id" in message
        and isinstance(message["id"], (str, int))
        and not isinstance(message["id"], bool)
    )


def is_notification(message: Any) -> bool:
    return (
        isinstance(message, dict)
        and message.get("jsonrpc") == JSONRPC_VERSION
        and isinstance(message.get("method"), str)
        and "id" not in message
    )


def is_response(message: Any) -> bool:
    return (
        isinstance(message, dict)
        and "method" not in message
        and "id" in message
        and ("result" in message or "error" in message)
    )

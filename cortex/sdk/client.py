"""
Cortex backend client (async).

Usage:
    from cortex.sdk import AsyncCortexClient
    async with AsyncCortexClient(base_url, auth_token=token, project_id=pid) as client:
        contexts = await client.list_contexts()
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, urlparse

import httpx

from cortex.mcp.protocol import (
    FORBIDDEN,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    NOT_FOUND,
    RATE_LIMITED,
    SERVICE_UNAVAILABLE,
    UNAUTHORIZED,
)
from cortex.sdk.errors import CortexAPIError, CortexConnectionError, CortexError, CortexTimeoutError
from cortex.sdk.retry import RetryPolicy, retry_async
from cortex.version import __version__

logger = logging.getLogger("Cortex.sdk.client")

USER_AGENT = f"cortex-mcp-adapter/{__version__}"

# HTTP status -> (protocol error code, message)
ERROR_MAPPINGS: Dict[int, Tuple[int, str]] = {
    400: (INVALID_PARAMS, "Invalid request parameters"),
    401: (UNAUTHORIZED, "Unauthorized"),
    403: (FORBIDDEN, "Forbidden"),
    404: (NOT_FOUND, "Resource not found"),
    429: (RATE_LIMITED, "Rate limit exceeded"),
    500: (INTERNAL_ERROR, "Internal server error"),
    502: (SERVICE_UNAVAILABLE, "Bad gateway"),
    503: (SERVICE_UNAVAILABLE, "Service unavailable"),
    504: (SERVICE_UNAVAILABLE, "Gateway timeout"),
}


def _normalize_base_url(base_url: str) -> str:
    value = base_url.rstrip("/")
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Invalid Cortex base URL: {base_url!r}")
    return value


def _decode_body(text: str) -> Any:
    """JSON-decode opportunistically; non-JSON bodies pass through as text."""
    if not text:
        return {}
    try:
        return json.loads(text)
    except ValueError:
        return text


def map_http_error(
    status: int,
    text: str,
    *,
    path: Optional[str] = None,
    headers: Optional[httpx.Headers] = None,
) -> CortexAPIError:
    """Translate a non-2xx backend response into a CortexAPIError."""
    payload = _decode_body(text)
    mapping = ERROR_MAPPINGS.get(status)
    if mapping is None:
        return CortexAPIError(
            f"HTTP {status}: {text or 'Unknown error'}",
            code=INTERNAL_ERROR,
            data={"http_status": status, "body": text},
            status_code=status,
            path=path,
            payload=payload,
        )

    code, message = mapping
    data: Dict[str, Any] = {"http_status": status}
    if status == 429:
        retry_after = payload.get("retryAfter") if isinstance(payload, dict) else None
        if retry_after is None and headers is not None:
            retry_after = headers.get("Retry-After")
        if retry_after is not None:
            data["retry_after"] = retry_after
    if text:
        if isinstance(payload, dict):
            if payload.get("message"):
                data["details"] = payload["message"]
        else:
            data["details"] = text
    return CortexAPIError(message, code=code, data=data, status_code=status, path=path, payload=payload)


def _unwrap(payload: Any, *keys: str) -> Any:
    """Pull ``result.<key>`` or ``<key>`` out of a backend envelope, else the raw payload."""
    if not isinstance(payload, dict):
        return payload
    result = payload.get("result")
    for key in keys:
        if isinstance(result, dict) and key in result:
            return result[key]
    for key in keys:
        if key in payload:
            return payload[key]
    return payload


class AsyncCortexClient:
    """
    Async gateway for the Cortex context REST API.

    Every call carries the bearer token and the project scope header, and is
    bounded by ``timeout`` seconds; exceeding it aborts the network call.
    GET, PUT and DELETE are retried on transient network failures.
    """

    def __init__(
        self,
        base_url: str,
        *,
        auth_token: str,
        project_id: str,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = _normalize_base_url(base_url)
        self.auth_token = auth_token
        self.project_id = project_id
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient()

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> "AsyncCortexClient":
        policy = RetryPolicy(
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay_ms / 1000.0,
            max_jitter=config.retry_max_jitter_ms / 1000.0,
        )
        return cls(
            config.base_url,
            auth_token=config.auth_token,
            project_id=config.project_id,
            timeout=config.timeout_seconds,
            retry_policy=policy,
            **kwargs,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "AsyncCortexClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _url(self, path: str) -> str:
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.base_url}{path}"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self.auth_token}",
            "User-Agent": USER_AGENT,
            "X-Project-Id": self.project_id,
        }

    async def _request(self, method: str, path: str, *, json_body: Optional[Dict[str, Any]] = None) -> Any:
        url = self._url(path)
        try:
            response = await asyncio.wait_for(
                self._client.request(
                    method,
                    url,
                    json=json_body,
                    headers=self._headers(),
                    timeout=self.timeout,
                ),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise CortexTimeoutError(
                "Request timeout",
                code=INTERNAL_ERROR,
                data={"timeout": self.timeout},
            ) from exc
        except httpx.TransportError as exc:
            raise CortexConnectionError(
                f"Network error: {exc}",
                code=INTERNAL_ERROR,
                data={"original_error": str(exc)},
            ) from exc
        except httpx.HTTPError as exc:
            raise CortexError(f"HTTP client error: {exc}", data={"original_error": str(exc)}) from exc

        text = response.text
        if not response.is_success:
            raise map_http_error(response.status_code, text, path=path, headers=response.headers)
        return _decode_body(text)

    async def _idempotent(self, method: str, path: str, *, json_body: Optional[Dict[str, Any]] = None) -> Any:
        return await retry_async(
            lambda: self._request(method, path, json_body=json_body),
            policy=self.retry_policy,
            sleep=self._sleep,
            label=f"{method} {path}",
        )

    async def get(self, path: str) -> Any:
        return await self._idempotent("GET", path)

    async def post(self, path: str, body: Dict[str, Any]) -> Any:
        return await self._request("POST", path, json_body=body)

    async def put(self, path: str, body: Dict[str, Any]) -> Any:
        return await self._idempotent("PUT", path, json_body=body)

    async def delete(self, path: str) -> Any:
        return await self._idempotent("DELETE", path)

    # Domain calls

    def _project_path(self) -> str:
        return f"/contexts/{quote(self.project_id, safe='')}"

    async def list_contexts(self) -> List[Dict[str, Any]]:
        payload = await self.get(self._project_path())
        contexts = _unwrap(payload, "contexts")
        return contexts if isinstance(contexts, list) else []

    async def find_file_by_name(self, filename: str) -> Optional[Dict[str, Any]]:
        for entry in await self.list_contexts():
            if isinstance(entry, dict) and filename in (entry.get("name"), entry.get("filename")):
                return entry
        return None

    async def get_file(self, file_id: str) -> Dict[str, Any]:
        payload = await self.get(f"{self._project_path()}/files/{quote(file_id, safe='')}")
        return _unwrap(payload, "file", "context")

    async def add_file(self, filename: str, content: str, file_type: str = "text") -> Dict[str, Any]:
        payload = await self.post(
            f"{self._project_path()}/files",
            {"filename": filename, "content": content, "file_type": file_type},
        )
        return _unwrap(payload, "file", "context")

    async def update_file(self, file_id: str, filename: str, content: str) -> Dict[str, Any]:
        payload = await self.put(
            f"/files/{quote(file_id, safe='')}",
            {"filename": filename, "content": content},
        )
        return _unwrap(payload, "file", "context")

    async def delete_file(self, file_id: str) -> Any:
        return await self.delete(f"/files/{quote(file_id, safe='')}")

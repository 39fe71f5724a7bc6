"""Shared fakes for the adapter tests: virtual clock, in-memory writer, fake backend."""

import asyncio
import heapq
import itertools
import json
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from cortex.mcp.framing import FrameDecoder, decode_body
from cortex.sdk.client import AsyncCortexClient
from cortex.sdk.retry import RetryPolicy

PROJECT_ID = "123e4567-e89b-42d3-a456-426614174000"
TOKEN = "test-token-0123456789"
BASE_URL = "http://cortex.test/api/mcp"


class _ManualTimer:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Virtual clock: timers fire only when a test calls advance()."""

    def __init__(self, start: float = 1000.0):
        self._now = start
        self._timers: List[Tuple[float, int, _ManualTimer, Callable[[], None]]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> _ManualTimer:
        timer = _ManualTimer()
        heapq.heappush(self._timers, (self._now + delay, next(self._seq), timer, callback))
        return timer

    def advance(self, seconds: float) -> None:
        deadline = self._now + seconds
        while self._timers and self._timers[0][0] <= deadline:
            when, _, timer, callback = heapq.heappop(self._timers)
            self._now = when
            if not timer.cancelled:
                callback()
        self._now = deadline

    @property
    def active_timers(self) -> int:
        return sum(1 for _, _, timer, _ in self._timers if not timer.cancelled)


class MemoryWriter:
    """StreamWriter stand-in that keeps every written byte."""

    def __init__(self) -> None:
        self.buffer = bytearray()
        self.closed = False
        self.fail_with: Optional[BaseException] = None

    def write(self, data: bytes) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.buffer.extend(data)

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True

    def messages(self) -> List[Dict[str, Any]]:
        decoder = FrameDecoder()
        decoder.feed(bytes(self.buffer))
        return [decode_body(body) for body in decoder]

    def by_id(self) -> Dict[Any, List[Dict[str, Any]]]:
        grouped: Dict[Any, List[Dict[str, Any]]] = {}
        for message in self.messages():
            grouped.setdefault(message.get("id"), []).append(message)
        return grouped


class FakeBackend:
    """In-memory Cortex REST API served through httpx.MockTransport."""

    def __init__(self, project_id: str = PROJECT_ID):
        self.project_id = project_id
        self.files: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.requests: List[httpx.Request] = []
        self.overrides: Dict[Tuple[str, str], List[Any]] = {}
        self.post_gate: Optional[asyncio.Event] = None
        self.hang_paths: set = set()

    def add(self, name: str, content: str = "", file_type: str = "text") -> Dict[str, Any]:
        file_id = str(uuid.uuid4())
        entry = {
            "id": file_id,
            "name": name,
            "content": content,
            "size": len(content.encode("utf-8")),
            "metadata": {"file_type": file_type},
        }
        self.files[file_id] = entry
        return entry

    def respond_once(self, method: str, path: str, response: Any) -> None:
        """Queue a canned httpx.Response (or exception) for the next matching call."""
        self.overrides.setdefault((method, path), []).append(response)

    @property
    def posts(self) -> int:
        return sum(1 for method, _ in self.calls if method == "POST")

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        self.calls.append((method, path))
        self.requests.append(request)

        queued = self.overrides.get((method, path))
        if queued:
            canned = queued.pop(0)
            if isinstance(canned, Exception):
                raise canned
            return canned

        if path in self.hang_paths:
            await asyncio.Event().wait()

        prefix = f"/api/mcp/contexts/{self.project_id}"
        if method == "GET" and path == prefix:
            listing = [
                {"id": f["id"], "name": f["name"], "metadata": f["metadata"]}
                for f in self.files.values()
            ]
            return httpx.Response(200, json={"result": {"contexts": listing}})

        if method == "GET" and path.startswith(prefix + "/files/"):
            file_id = path.rsplit("/", 1)[-1]
            if file_id not in self.files:
                return httpx.Response(404, json={"message": "File not found"})
            return httpx.Response(200, json={"result": {"file": self.files[file_id]}})

        if method == "POST" and path == prefix + "/files":
            if self.post_gate is not None:
                await self.post_gate.wait()
            body = json.loads(request.content)
            created = self.add(body["filename"], body["content"], body.get("file_type", "text"))
            return httpx.Response(201, json={"result": {"file": created}})

        if path.startswith("/api/mcp/files/"):
            file_id = path.rsplit("/", 1)[-1]
            if file_id not in self.files:
                return httpx.Response(404, json={"message": "File not found"})
            if method == "PUT":
                body = json.loads(request.content)
                entry = self.files[file_id]
                entry.update(name=body["filename"], content=body["content"], size=len(body["content"].encode("utf-8")))
                return httpx.Response(200, json={"result": {"file": entry}})
            if method == "DELETE":
                del self.files[file_id]
                return httpx.Response(200, json={"success": True})

        return httpx.Response(404, json={"message": f"No route for {method} {path}"})


async def _no_sleep(delay: float) -> None:
    return None


def make_client(backend: FakeBackend, **kwargs: Any) -> AsyncCortexClient:
    kwargs.setdefault("timeout", 5.0)
    kwargs.setdefault("retry_policy", RetryPolicy(max_retries=3, base_delay=0.0, max_jitter=0.0))
    kwargs.setdefault("sleep", _no_sleep)
    return AsyncCortexClient(
        BASE_URL,
        auth_token=TOKEN,
        project_id=backend.project_id,
        http_client=httpx.AsyncClient(transport=backend.transport()),
        **kwargs,
    )


async def settle(rounds: int = 20) -> None:
    """Let every ready task run until the loop goes quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)



import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from cortex.sdk.errors import CortexError

from .framing import FrameDecoder, decode_body, encode_frame
from .handlers import MethodDispatcher
from .protocol import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    PARSE_ERROR,
    SERVER_ERROR,
    SERVER_SHUTTING_DOWN,
    UNKNOWN_ID,
    McpError,
    is_notification,
    is_request,
    is_response,
    make_error,
    make_result,
)
from .state import LoopScheduler, Scheduler, TimerHandle
from .utils import redact_secrets

logger = logging.getLogger("Cortex.mcp.server")

READ_CHUNK_SIZE = 65536
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_SHUTDOWN_GRACE = 0.1


@dataclass
class PendingRequest:
    msg_id: Any
    method: str
    created_at: float
    timer: TimerHandle
    task: "asyncio.Task[None]"


class McpServer:
    """
    Handles JSON-RPC communication over a framed byte stream.

    One consumer loop reads chunks in arrival order and starts one task per
    request; responses are written as each task finishes, so they may go out
    of order. Every request id gets exactly one response: the result, a
    timeout error, or a shutdown error, whichever comes first.
    """

    def __init__(
        self,
        dispatcher: MethodDispatcher,
        reader: asyncio.StreamReader,
        writer: Any,
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        scheduler: Optional[Scheduler] = None,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE,
    ):
        self.dispatcher = dispatcher
        self.reader = reader
        self.writer = writer
        self.request_timeout = request_timeout
        self.shutdown_grace = shutdown_grace
        self.scheduler: Scheduler = scheduler or dispatcher.scheduler or LoopScheduler()
        self.decoder = FrameDecoder()

        self.transport_closed = False
        self.shutting_down = False
        self._closed = False
        self._write_lock = asyncio.Lock()
        self._stop_requested = asyncio.Event()
        self._pending_changed = asyncio.Event()
        self._pending: Dict[Any, PendingRequest] = {}
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._outgoing: Set["asyncio.Task[Any]"] = set()

    @classmethod
    def from_config(cls, config: Any, dispatcher: MethodDispatcher, reader: asyncio.StreamReader, writer: Any, **kwargs: Any) -> "McpServer":
        return cls(dispatcher, reader, writer, request_timeout=config.request_timeout_ms / 1000.0, **kwargs)

    @property
    def pending_ids(self) -> Set[Any]:
        return set(self._pending)

    # Read loop

    async def serve(self) -> None:
        """
        Pump frames until EOF or a shutdown request, then drain and close.

        On EOF, requests already in flight are allowed to finish (each is
        bounded by the request timeout). On a shutdown request, pending
        requests get shutdown errors at once, and input that is still
        arriving is answered with shutdown errors for a short grace period.
        """
        logger.info("MCP server loop started (request timeout %.1fs)", self.request_timeout)
        stop_waiter = asyncio.ensure_future(self._stop_requested.wait())
        try:
            while True:
                read_task = asyncio.ensure_future(self.reader.read(READ_CHUNK_SIZE))
                await asyncio.wait({read_task, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
                if not read_task.done():
                    read_task.cancel()
                    logger.info("Shutdown requested; rejecting further input")
                    await self._resolve_pending()
                    await self._linger()
                    break

                chunk = read_task.result()
                if not chunk:
                    logger.info("Input stream closed (EOF)")
                    await self._wait_for_pending(stop_waiter)
                    break

                await self._process_chunk(chunk)
        finally:
            stop_waiter.cancel()
            await self.shutdown()

    async def _process_chunk(self, chunk: bytes) -> None:
        self.decoder.feed(chunk)
        for body in self.decoder:
            await self.handle_body(body)

    async def _wait_for_pending(self, stop_waiter: "asyncio.Future[Any]") -> None:
        while self._pending and not stop_waiter.done():
            logger.info("Waiting for %d in-flight request(s) before closing", len(self._pending))
            self._pending_changed.clear()
            changed = asyncio.ensure_future(self._pending_changed.wait())
            try:
                await asyncio.wait({changed, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                changed.cancel()

    async def _linger(self) -> None:
        while True:
            try:
                chunk = await asyncio.wait_for(self.reader.read(READ_CHUNK_SIZE), timeout=self.shutdown_grace)
            except asyncio.TimeoutError:
                return
            if not chunk:
                return
            await self._process_chunk(chunk)

    async def handle_body(self, body: bytes) -> None:
        try:
            message = decode_body(body)
        except (ValueError, RecursionError) as exc:
            logger.warning("Failed to parse message body (%d bytes): %s", len(body), exc)
            await self.send(make_error(UNKNOWN_ID, PARSE_ERROR, "Parse error", {"error": str(exc)}))
            return
        await self.handle_message(message)

    async def handle_message(self, message: Any) -> None:
        if is_response(message):
            logger.info("Ignoring response message from client: id=%r", message.get("id"))
            return

        if is_notification(message):
            method = message["method"]
            if self.shutting_down:
                logger.info("Dropping notification %s received during shutdown", method)
                return
            self._spawn(self._run_notification(method, message.get("params")))
            return

        if not is_request(message):
            logger.warning("Invalid JSON-RPC message shape: %r", message if not isinstance(message, dict) else sorted(message))
            await self.send(make_error(UNKNOWN_ID, INVALID_REQUEST, "Invalid Request"))
            return

        msg_id = message["id"]
        method = message["method"]

        if self.shutting_down:
            await self.send(make_error(msg_id, SERVER_SHUTTING_DOWN, "Server shutting down", {"shutting_down": True}))
            return

        if msg_id in self._pending:
            logger.warning("Rejecting duplicate in-flight request id %r (%s)", msg_id, method)
            await self.send(make_error(UNKNOWN_ID, INVALID_REQUEST, "Duplicate request id", {"id": msg_id}))
            return

        task = self._spawn(self._run_request(msg_id, method, message.get("params")))
        timer = self.scheduler.call_later(
            self.request_timeout,
            functools.partial(self._on_request_timeout, msg_id),
        )
        self._pending[msg_id] = PendingRequest(
            msg_id=msg_id,
            method=method,
            created_at=self.scheduler.now(),
            timer=timer,
            task=task,
        )

    # Dispatch

    async def _run_request(self, msg_id: Any, method: str, params: Any) -> None:
        try:
            result = await self.dispatcher.dispatch(method, params, msg_id)
            response = make_result(msg_id, {} if result is None else result)
        except McpError as exc:
            response = make_error(msg_id, exc.code, exc.message, exc.data)
        except CortexError as exc:
            logger.warning("Backend error while handling %s: %s", method, redact_secrets(str(exc)))
            response = make_error(msg_id, exc.code, exc.message, exc.data)
        except Exception as exc:
            logger.exception("Unexpected error while handling %s id=%r", method, msg_id)
            response = make_error(msg_id, INTERNAL_ERROR, "Internal error", {"error": redact_secrets(str(exc))})

        pending = self._pending.get(msg_id)
        if pending is None or pending.task is not asyncio.current_task():
            logger.info("Discarding late response for %s id=%r", method, msg_id)
            return
        self._forget(msg_id)
        pending.timer.cancel()
        await self.send(response)

    async def _run_notification(self, method: str, params: Any) -> None:
        try:
            await self.dispatcher.dispatch(method, params)
        except McpError as exc:
            logger.warning("Notification %s rejected: %s", method, exc.message)
        except Exception:
            logger.exception("Error while handling notification %s", method)

    def _on_request_timeout(self, msg_id: Any) -> None:
        # The dispatched task keeps running; its result is discarded.
        pending = self._forget(msg_id)
        if pending is None:
            return
        timeout_ms = int(self.request_timeout * 1000)
        logger.warning("Request %s id=%r timed out after %dms", pending.method, msg_id, timeout_ms)
        send = asyncio.ensure_future(self.send(make_error(
            msg_id,
            SERVER_ERROR,
            "Request timeout",
            {"method": pending.method, "timeout_ms": timeout_ms},
        )))
        self._outgoing.add(send)
        send.add_done_callback(self._outgoing.discard)

    def _spawn(self, coro: Any) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _forget(self, msg_id: Any) -> Optional[PendingRequest]:
        pending = self._pending.pop(msg_id, None)
        if pending is not None:
            self._pending_changed.set()
        return pending

    # Output

    def _encode(self, message: Dict[str, Any]) -> bytes:
        try:
            return encode_frame(message)
        except (TypeError, ValueError) as exc:
            logger.error("Could not encode message id=%r: %s", message.get("id"), exc)
        data = {"error": "Response could not be encoded"}
        try:
            return encode_frame(make_error(message.get("id"), INTERNAL_ERROR, "Internal error", data))
        except (TypeError, ValueError):
            return encode_frame(make_error(UNKNOWN_ID, INTERNAL_ERROR, "Internal error", data))

    async def send(self, message: Dict[str, Any]) -> None:
        """Frame and write one message; drops it once the transport is closed."""
        if self.transport_closed:
            logger.debug("Transport closed; dropping message id=%r", message.get("id"))
            return
        frame = self._encode(message)
        async with self._write_lock:
            if self.transport_closed:
                return
            try:
                self.writer.write(frame)
                await self.writer.drain()
            except (BrokenPipeError, ConnectionResetError, OSError) as exc:
                self.transport_closed = True
                logger.warning("MCP stdio transport closed while sending: %s", exc)

    # Shutdown

    def begin_shutdown(self) -> None:
        """Stop accepting requests. New ones are answered with a shutdown error."""
        if self.shutting_down:
            return
        self.shutting_down = True
        self.dispatcher.close()
        logger.info("Shutdown started with %d pending request(s)", len(self._pending))

    def request_shutdown(self) -> None:
        """Signal-handler entry point: begin shutdown and wake the read loop."""
        self.begin_shutdown()
        self._stop_requested.set()

    async def _resolve_pending(self) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        self._pending_changed.set()
        for entry in pending:
            entry.timer.cancel()
            await self.send(make_error(
                entry.msg_id,
                SERVER_SHUTTING_DOWN,
                "Server shutting down",
                {"shutting_down": True},
            ))
        if pending:
            logger.info("Resolved %d pending request(s) with shutdown errors", len(pending))

    async def shutdown(self) -> None:
        """Answer every pending request with a shutdown error, then close the stream."""
        if self._closed:
            return
        self._closed = True
        self.begin_shutdown()
        await self._resolve_pending()

        if self._outgoing:
            await asyncio.gather(*list(self._outgoing), return_exceptions=True)

        async with self._write_lock:
            self.transport_closed = True
            try:
                self.writer.close()
            except OSError as exc:
                logger.warning("Error closing output stream: %s", exc)

        current = asyncio.current_task()
        leftovers = [task for task in self._tasks if task is not current and not task.done()]
        for task in leftovers:
            task.cancel()
        if leftovers:
            await asyncio.gather(*leftovers, return_exceptions=True)
        if self.decoder.resync_count:
            logger.warning("Framing resynchronized %d time(s) during session", self.decoder.resync_count)
        logger.info("MCP server stopped")

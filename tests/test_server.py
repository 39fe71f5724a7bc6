import asyncio
import json

import pytest
import pytest_asyncio

from cortex.mcp.framing import encode_frame
from cortex.mcp.handlers import MethodDispatcher
from cortex.mcp.protocol import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    NOT_FOUND,
    PARSE_ERROR,
    SERVER_ERROR,
    SERVER_SHUTTING_DOWN,
    McpError,
)
from cortex.mcp.server import McpServer
from cortex.sdk.errors import CortexAPIError

from support import PROJECT_ID, MemoryWriter, settle


class _ScriptedDispatcher:
    def __init__(self, scheduler):
        self.scheduler = scheduler
        self.gates = {}
        self.calls = []
        self.closed = False

    async def dispatch(self, method, params=None, msg_id=None):
        self.calls.append((method, msg_id))
        if method == "slow":
            gate = self.gates.setdefault(msg_id, asyncio.Event())
            await gate.wait()
            return {"done": msg_id}
        if method == "fail_mcp":
            raise McpError(INVALID_PARAMS, "bad params", {"field": "x"})
        if method == "fail_backend":
            raise CortexAPIError("Resource not found", code=NOT_FOUND, data={"http_status": 404}, status_code=404)
        if method == "explode":
            raise RuntimeError("kaboom")
        if method == "quiet":
            return None
        if method == "unencodable":
            return {"value": {1, 2}}
        return {"echo": msg_id}

    def close(self):
        self.closed = True


def _request(msg_id, method, params=None):
    message = {"jsonrpc": "2.0", "id": msg_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


async def _send(server, message):
    await server.handle_body(json.dumps(message).encode("utf-8"))


@pytest.fixture
def scripted(scheduler):
    return _ScriptedDispatcher(scheduler)


@pytest.fixture
def writer():
    return MemoryWriter()


@pytest_asyncio.fixture
async def server(scripted, scheduler, writer):
    return McpServer(scripted, asyncio.StreamReader(), writer, scheduler=scheduler)


@pytest.mark.asyncio
async def test_each_concurrent_request_gets_exactly_one_response(server, scripted, writer):
    ids = list(range(1, 11)) + ["a", "b"]
    for msg_id in ids:
        await _send(server, _request(msg_id, "slow"))
    assert server.pending_ids == set(ids)

    for msg_id in reversed(ids):
        scripted.gates[msg_id].set()
    await settle()

    responses = writer.by_id()
    assert set(responses) == set(ids)
    for msg_id in ids:
        assert len(responses[msg_id]) == 1
        assert responses[msg_id][0]["result"] == {"done": msg_id}
    assert server.pending_ids == set()


@pytest.mark.asyncio
async def test_completion_cancels_timeout(server, scheduler, writer):
    await _send(server, _request(1, "echo"))
    await settle()

    assert writer.messages() == [{"jsonrpc": "2.0", "id": 1, "result": {"echo": 1}}]
    assert scheduler.active_timers == 0


@pytest.mark.asyncio
async def test_stuck_request_times_out_after_30_seconds(server, scripted, scheduler, writer):
    await _send(server, _request(7, "slow"))
    await settle()

    scheduler.advance(29.5)
    await settle()
    assert writer.messages() == []

    scheduler.advance(0.5)
    await settle()
    (response,) = writer.messages()
    assert response["id"] == 7
    assert response["error"]["code"] == SERVER_ERROR
    assert response["error"]["message"] == "Request timeout"
    assert response["error"]["data"] == {"method": "slow", "timeout_ms": 30000}
    assert server.pending_ids == set()

    # The late result is dropped.
    scripted.gates[7].set()
    await settle()
    assert len(writer.messages()) == 1


@pytest.mark.asyncio
async def test_request_timeout_is_configurable(scripted, scheduler, writer):
    server = McpServer(scripted, asyncio.StreamReader(), writer, scheduler=scheduler, request_timeout=5.0)
    await _send(server, _request(1, "slow"))
    scheduler.advance(5.0)
    await settle()
    assert writer.messages()[0]["error"]["data"]["timeout_ms"] == 5000


@pytest.mark.asyncio
async def test_error_conversion(server, writer):
    await _send(server, _request(1, "fail_mcp"))
    await _send(server, _request(2, "fail_backend"))
    await _send(server, _request(3, "explode"))
    await _send(server, _request(4, "quiet"))
    await settle()

    responses = {m["id"]: m for m in writer.messages()}
    assert responses[1]["error"] == {"code": INVALID_PARAMS, "message": "bad params", "data": {"field": "x"}}
    assert responses[2]["error"] == {"code": NOT_FOUND, "message": "Resource not found", "data": {"http_status": 404}}
    assert responses[3]["error"]["code"] == INTERNAL_ERROR
    assert responses[3]["error"]["message"] == "Internal error"
    assert responses[3]["error"]["data"] == {"error": "kaboom"}
    assert responses[4]["result"] == {}


@pytest.mark.asyncio
async def test_invalid_json_gets_parse_error_with_null_id(server, writer):
    await server.handle_body(b'{"jsonrpc": "2.0", "id": 1, "method": ')
    (response,) = writer.messages()
    assert response["id"] is None
    assert response["error"]["code"] == PARSE_ERROR


@pytest.mark.parametrize(
    "message",
    [
        {"jsonrpc": "2.0", "id": 1},
        {"jsonrpc": "1.0", "id": 1, "method": "ping"},
        {"jsonrpc": "2.0", "id": True, "method": "ping"},
        {"jsonrpc": "2.0", "id": {"nested": 1}, "method": "ping"},
        {"jsonrpc": "2.0", "id": 1, "method": 5},
        [1, 2, 3],
        "ping",
    ],
)
@pytest.mark.asyncio
async def test_malformed_messages_get_invalid_request_with_null_id(server, scripted, writer, message):
    await _send(server, message)
    (response,) = writer.messages()
    assert response["id"] is None
    assert response["error"]["code"] == INVALID_REQUEST
    assert scripted.calls == []


@pytest.mark.asyncio
async def test_duplicate_in_flight_id_is_rejected(server, scripted, writer):
    await _send(server, _request(1, "slow"))
    await _send(server, _request(1, "slow"))
    await settle()

    (rejection,) = writer.messages()
    assert rejection["id"] is None
    assert rejection["error"]["code"] == INVALID_REQUEST
    assert rejection["error"]["data"] == {"id": 1}
    assert scripted.calls == [("slow", 1)]

    scripted.gates[1].set()
    await settle()
    assert [m["id"] for m in writer.messages()] == [None, 1]


@pytest.mark.asyncio
async def test_id_can_be_reused_after_completion(server, writer):
    await _send(server, _request(1, "echo"))
    await settle()
    await _send(server, _request(1, "echo"))
    await settle()
    assert [m.get("result") for m in writer.messages()] == [{"echo": 1}, {"echo": 1}]


@pytest.mark.asyncio
async def test_notifications_get_no_response(server, scripted, writer):
    await _send(server, {"jsonrpc": "2.0", "method": "echo"})
    await _send(server, {"jsonrpc": "2.0", "method": "explode"})
    await settle()

    assert writer.messages() == []
    assert scripted.calls == [("echo", None), ("explode", None)]


@pytest.mark.asyncio
async def test_client_responses_are_ignored(server, scripted, writer):
    await _send(server, {"jsonrpc": "2.0", "id": 9, "result": {}})
    await settle()
    assert writer.messages() == []
    assert scripted.calls == []


@pytest.mark.asyncio
async def test_shutdown_drains_pending_and_rejects_new_requests(server, scripted, writer):
    await _send(server, _request(1, "slow"))
    await _send(server, _request(2, "slow"))
    await settle()

    server.begin_shutdown()
    assert scripted.closed
    await _send(server, _request(3, "echo"))
    rejected = writer.messages()[-1]
    assert rejected["id"] == 3
    assert rejected["error"]["code"] == SERVER_SHUTTING_DOWN
    assert ("echo", 3) not in scripted.calls

    await server.shutdown()

    responses = writer.by_id()
    for msg_id in (1, 2):
        (response,) = responses[msg_id]
        assert response["error"]["code"] == SERVER_SHUTTING_DOWN
        assert response["error"]["data"] == {"shutting_down": True}
    assert writer.closed
    assert server.pending_ids == set()

    before = len(writer.messages())
    scripted.gates[1].set()
    await settle()
    assert len(writer.messages()) == before


@pytest.mark.asyncio
async def test_broken_pipe_closes_transport_quietly(server, writer):
    writer.fail_with = BrokenPipeError("gone")
    await _send(server, _request(1, "echo"))
    await settle()
    assert server.transport_closed

    writer.fail_with = None
    await _send(server, _request(2, "echo"))
    await settle()
    assert writer.messages() == []


@pytest.mark.asyncio
async def test_serve_runs_until_eof(client, scheduler, writer, backend):
    backend.add("notes.md")
    dispatcher = MethodDispatcher(client, project_id=PROJECT_ID, scheduler=scheduler)
    reader = asyncio.StreamReader()
    server = McpServer(dispatcher, reader, writer, scheduler=scheduler)

    stream = b"".join([
        encode_frame(_request(1, "initialize", {"protocolVersion": "2025-06-18", "clientInfo": {"name": "t"}})),
        encode_frame({"jsonrpc": "2.0", "method": "notifications/initialized"}),
        encode_frame(_request(2, "tools/call", {"name": "get_contexts", "arguments": {}})),
    ])
    for i in range(0, len(stream), 5):
        reader.feed_data(stream[i:i + 5])
    reader.feed_eof()

    await asyncio.wait_for(server.serve(), timeout=5)

    responses = {m["id"]: m for m in writer.messages()}
    assert responses[1]["result"]["protocolVersion"] == "2025-06-18"
    assert writer.closed
    assert dispatcher.session.shutting_down
    (listing,) = writer.by_id()[2]
    assert listing["result"]["content"][0]["text"].startswith("Found 1 context file(s)")


@pytest.mark.asyncio
async def test_request_shutdown_stops_serve_loop(server, scripted, writer):
    reader = server.reader
    serving = asyncio.ensure_future(server.serve())
    reader.feed_data(encode_frame(_request(1, "slow")))
    await settle()
    assert server.pending_ids == {1}

    server.request_shutdown()
    await asyncio.wait_for(serving, timeout=5)

    (response,) = writer.messages()
    assert response["error"]["code"] == SERVER_SHUTTING_DOWN
    assert writer.closed


@pytest.mark.asyncio
async def test_requests_arriving_after_shutdown_signal_get_shutdown_errors(server, scripted, writer):
    reader = server.reader
    serving = asyncio.ensure_future(server.serve())
    reader.feed_data(encode_frame(_request(1, "slow")))
    await settle()
    assert server.pending_ids == {1}

    server.request_shutdown()
    reader.feed_data(encode_frame(_request(2, "echo")))
    await asyncio.wait_for(serving, timeout=5)

    responses = writer.by_id()
    for msg_id in (1, 2):
        (response,) = responses[msg_id]
        assert response["error"]["code"] == SERVER_SHUTTING_DOWN
        assert response["error"]["data"] == {"shutting_down": True}
    assert ("echo", 2) not in scripted.calls
    assert writer.closed


@pytest.mark.asyncio
async def test_eof_waits_for_in_flight_requests(server, scripted, writer):
    reader = server.reader
    reader.feed_data(encode_frame(_request(1, "slow")))
    reader.feed_eof()
    serving = asyncio.ensure_future(server.serve())
    await settle()

    assert not serving.done()
    assert not writer.closed

    scripted.gates[1].set()
    await asyncio.wait_for(serving, timeout=5)

    assert writer.messages() == [{"jsonrpc": "2.0", "id": 1, "result": {"done": 1}}]
    assert writer.closed


@pytest.mark.asyncio
async def test_eof_with_stuck_request_closes_after_timeout(server, scheduler, writer):
    reader = server.reader
    reader.feed_data(encode_frame(_request(3, "slow")))
    reader.feed_eof()
    serving = asyncio.ensure_future(server.serve())
    await settle()
    assert not serving.done()

    scheduler.advance(30)
    await asyncio.wait_for(serving, timeout=5)

    (response,) = writer.by_id()[3]
    assert response["error"]["code"] == SERVER_ERROR
    assert response["error"]["message"] == "Request timeout"
    assert writer.closed


@pytest.mark.asyncio
async def test_lone_surrogate_id_round_trips(server, writer):
    await server.handle_body(b'{"jsonrpc": "2.0", "id": "\\ud800", "method": "echo"}')
    await settle()

    (response,) = writer.messages()
    assert response["id"] == "\ud800"
    assert response["result"] == {"echo": "\ud800"}


@pytest.mark.asyncio
async def test_duplicate_lone_surrogate_id_is_rejected(server, scripted, writer):
    body = b'{"jsonrpc": "2.0", "id": "\\udfff", "method": "slow"}'
    await server.handle_body(body)
    await server.handle_body(body)
    await settle()

    (rejection,) = writer.messages()
    assert rejection["id"] is None
    assert rejection["error"]["code"] == INVALID_REQUEST
    assert rejection["error"]["data"] == {"id": "\udfff"}

    scripted.gates["\udfff"].set()
    await settle()
    assert writer.messages()[-1] == {"jsonrpc": "2.0", "id": "\udfff", "result": {"done": "\udfff"}}


@pytest.mark.asyncio
async def test_unencodable_result_becomes_internal_error(server, writer):
    await _send(server, _request(4, "unencodable"))
    await settle()

    (response,) = writer.messages()
    assert response["id"] == 4
    assert response["error"]["code"] == INTERNAL_ERROR
    assert response["error"]["data"] == {"error": "Response could not be encoded"}
    assert server.pending_ids == set()


@pytest.mark.asyncio
async def test_deeply_nested_body_gets_parse_error(server, scripted, writer):
    await server.handle_body(b"[" * 200000 + b"]" * 200000)

    (response,) = writer.messages()
    assert response["id"] is None
    assert response["error"]["code"] == PARSE_ERROR
    assert scripted.calls == []

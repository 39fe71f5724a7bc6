import logging
import re
from typing import Any, Awaitable, Callable, Dict, Optional

from cortex.core.validation import is_valid_uuid
from cortex.sdk.client import AsyncCortexClient
from cortex.sdk.errors import CortexAPIError, CortexError
from cortex.version import __version__

from .dedup import CreateOutcome, WriteDeduplicator
from .definitions import (
    DEFAULT_FILE_TYPE,
    DEFAULT_INITIAL_CONTEXT_FILE_TYPE,
    DEFAULT_INITIAL_CONTEXT_FILENAME,
    DESTRUCTIVE_TOOLS,
    IDEMPOTENT_TOOLS,
    READ_ONLY_TOOLS,
    TOOLS_BY_NAME,
    TOOLS_SCHEMAS,
    UUID_ARGUMENTS,
)
from .metrics import McpMetrics
from .protocol import (
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    McpError,
    negotiate_protocol_version,
)
from .state import LoopScheduler, ProtocolSession, Scheduler, SessionEvent, TimerHandle
from .utils import (
    DEFAULT_TOOL_RESPONSE_MAX_CHARS,
    build_initialize_instructions,
    format_context_listing,
    format_file,
    format_file_summary,
    redact_secrets,
    safe_json_dumps,
    text_result,
    truncate_tool_text,
)

logger = logging.getLogger("Cortex.mcp.handlers")

SERVER_NAME = "cortex-context-mcp"
RESOURCE_URI_PREFIX = "cortex://project/"

_INIT_METHODS = {"initialize", "initialized", "notifications/initialized"}
_CONFLICT_RE = re.compile(r"already exists", re.IGNORECASE)

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


def validate_tool_arguments(name: str, arguments: Dict[str, Any]) -> None:
    """Check arguments against the tool's input schema. Raises INVALID_PARAMS."""
    schema = TOOLS_BY_NAME[name]["inputSchema"]
    properties = schema.get("properties", {})
    required = schema.get("required", [])

    unexpected = sorted(set(arguments) - set(properties))
    if unexpected:
        raise McpError(
            INVALID_PARAMS,
            f"Unexpected argument(s) for {name}: {', '.join(unexpected)}",
            {"tool_name": name, "unexpected": unexpected},
        )

    for key in properties:
        present = key in arguments and arguments[key] is not None
        if not present:
            if key in required:
                raise McpError(INVALID_PARAMS, f"Invalid or missing {key}", {key: None})
            continue
        value = arguments[key]
        if not isinstance(value, str):
            raise McpError(INVALID_PARAMS, f"Invalid or missing {key}", {key: type(value).__name__})
        if key in required and not value.strip():
            raise McpError(INVALID_PARAMS, f"Invalid or missing {key}", {key: value})
        if key in UUID_ARGUMENTS and not is_valid_uuid(value):
            raise McpError(INVALID_PARAMS, f"Invalid or missing {key}", {key: value})


def _is_conflict(exc: CortexAPIError) -> bool:
    if exc.status_code == 409:
        return True
    details = exc.data.get("details") if isinstance(exc.data, dict) else None
    return any(
        isinstance(text, str) and _CONFLICT_RE.search(text)
        for text in (exc.message, details, exc.payload)
    )


def _describe_backend_error(exc: CortexError) -> str:
    text = exc.message
    data = exc.data if isinstance(exc.data, dict) else {}
    if "http_status" in data:
        text = f"{text} (HTTP {data['http_status']})"
    if data.get("details"):
        text = f"{text}: {data['details']}"
    if data.get("retry_after") is not None:
        text = f"{text}. Retry after {data['retry_after']} seconds."
    return redact_secrets(text)


class MethodDispatcher:
    """
    Routes MCP methods and tool calls, and owns the session lifecycle.

    Methods other than initialize/initialized that arrive before the session
    is ready are still served, with a warning.
    """

    def __init__(
        self,
        client: AsyncCortexClient,
        *,
        project_id: str,
        scheduler: Optional[Scheduler] = None,
        deduplicator: Optional[WriteDeduplicator] = None,
        init_fallback_seconds: float = 15.0,
        tool_response_max_chars: int = DEFAULT_TOOL_RESPONSE_MAX_CHARS,
    ):
        self.client = client
        self.project_id = project_id
        self.session = ProtocolSession()
        self.scheduler: Scheduler = scheduler or LoopScheduler()
        self.deduplicator = deduplicator or WriteDeduplicator()
        self.init_fallback_seconds = init_fallback_seconds
        self.tool_response_max_chars = tool_response_max_chars
        self._fallback_timer: Optional[TimerHandle] = None

        self._methods: Dict[str, Callable[[Dict[str, Any], Any], Awaitable[Any]]] = {
            "initialize": self.handle_initialize,
            "initialized": self.handle_initialized,
            "notifications/initialized": self.handle_initialized,
            "notifications/cancelled": self.handle_cancelled,
            "ping": self.handle_ping,
            "resources/list": self.handle_list_resources,
            "resources/read": self.handle_read_resource,
            "tools/list": self.handle_list_tools,
            "tools/call": self.handle_call_tool,
        }
        self._tools: Dict[str, ToolHandler] = {
            "get_contexts": self._do_get_contexts,
            "get_file": self._do_get_file,
            "add_file": self._do_add_file,
            "generate_initial_context": self._do_generate_initial_context,
            "update_file": self._do_update_file,
            "delete_file": self._do_delete_file,
        }

    @classmethod
    def from_config(cls, config: Any, client: AsyncCortexClient, **kwargs: Any) -> "MethodDispatcher":
        return cls(
            client,
            project_id=config.project_id,
            init_fallback_seconds=config.init_fallback_ms / 1000.0,
            tool_response_max_chars=config.tool_response_max_chars,
            **kwargs,
        )

    @property
    def resource_uri(self) -> str:
        return f"{RESOURCE_URI_PREFIX}{self.project_id}"

    async def dispatch(self, method: str, params: Any = None, msg_id: Any = None) -> Any:
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise McpError(INVALID_PARAMS, f"{method} params must be an object")

        handler = self._methods.get(method)
        if handler is None:
            raise McpError(METHOD_NOT_FOUND, f"Method not found: {method}", {"method": method})

        if method not in _INIT_METHODS and not self.session.ready:
            logger.warning(
                "Received %s before initialization complete (phase=%s), proceeding anyway",
                method,
                self.session.phase.value,
            )

        logger.debug("Handling %s id=%r", method, msg_id)
        return await handler(params, msg_id)

    def close(self) -> None:
        """Cancel the fallback timer and mark the session as shutting down."""
        self._cancel_fallback_timer()
        self.session.apply(SessionEvent.SHUTDOWN)

    # Lifecycle

    async def handle_initialize(self, params: Dict[str, Any], msg_id: Any) -> Dict[str, Any]:
        """Handle protocol negotiation and server initialization."""
        requested_version = params.get("protocolVersion")
        negotiated_version = negotiate_protocol_version(requested_version)
        if requested_version and requested_version != negotiated_version:
            logger.info("Client requested version %s, using %s", requested_version, negotiated_version)

        self.session.protocol_version = negotiated_version
        capabilities = params.get("capabilities")
        self.session.client_capabilities = capabilities if isinstance(capabilities, dict) else {}
        client_info = params.get("clientInfo")
        self.session.client_info = client_info if isinstance(client_info, dict) else {}

        if self.session.apply(SessionEvent.INITIALIZE):
            self.session.initialize_started_at = self.scheduler.now()
            self._start_fallback_timer()
        else:
            logger.warning(
                "initialize received in phase %s; version renegotiated, phase unchanged",
                self.session.phase.value,
            )

        logger.info(
            "Initialize: client=%s protocolVersion=%s",
            self.session.client_info.get("name", "unknown"),
            negotiated_version,
        )
        return {
            "protocolVersion": negotiated_version,
            "capabilities": {
                "resources": {"subscribe": False, "listChanged": False},
                "tools": {"listChanged": False},
                "logging": {},
                "prompts": {"listChanged": False},
            },
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
            "instructions": build_initialize_instructions(self.project_id),
        }

    async def handle_initialized(self, params: Dict[str, Any], msg_id: Any) -> None:
        self._cancel_fallback_timer()
        if self.session.apply(SessionEvent.INITIALIZED):
            logger.info("Client initialization complete after %.0fms", self._elapsed_since_initialize_ms())
        return None

    def on_fallback_timeout(self) -> None:
        """Promote Initializing -> Ready when the client never sends initialized."""
        self._fallback_timer = None
        if self.session.apply(SessionEvent.FALLBACK_TIMEOUT):
            logger.warning(
                "No initialized notification received within %.0fms, assuming ready",
                self._elapsed_since_initialize_ms(),
            )

    def _start_fallback_timer(self) -> None:
        self._cancel_fallback_timer()
        self._fallback_timer = self.scheduler.call_later(self.init_fallback_seconds, self.on_fallback_timeout)

    def _cancel_fallback_timer(self) -> None:
        if self._fallback_timer is not None:
            self._fallback_timer.cancel()
            self._fallback_timer = None

    def _elapsed_since_initialize_ms(self) -> float:
        started = self.session.initialize_started_at
        if started is None:
            return 0.0
        return max(0.0, (self.scheduler.now() - started) * 1000.0)

    async def handle_ping(self, params: Dict[str, Any], msg_id: Any) -> Dict[str, Any]:
        return {}

    async def handle_cancelled(self, params: Dict[str, Any], msg_id: Any) -> None:
        # In-flight backend calls are not interrupted; the eventual result is still sent.
        logger.info("Client cancelled request %r: %s", params.get("requestId"), params.get("reason", "no reason given"))
        return None

    # Resources

    async def handle_list_resources(self, params: Dict[str, Any], msg_id: Any) -> Dict[str, Any]:
        return {
            "resources": [
                {
                    "uri": self.resource_uri,
                    "name": "Project Context",
                    "description": "Access to project context files and information",
                    "mimeType": "application/json",
                }
            ]
        }

    async def handle_read_resource(self, params: Dict[str, Any], msg_id: Any) -> Dict[str, Any]:
        uri = params.get("uri") or self.resource_uri
        if uri != self.resource_uri:
            raise McpError(INVALID_PARAMS, f"Unknown resource: {uri}", {"uri": uri})

        try:
            contexts = await self.client.list_contexts()
        except CortexError as exc:
            logger.error("Resources read failed: %s", redact_secrets(str(exc)))
            data = dict(exc.data) if isinstance(exc.data, dict) else {}
            data["uri"] = uri
            raise McpError(exc.code, f"Failed to read resource: {exc.message}", data) from exc

        return {
            "contents": [
                {
                    "uri": uri,
                    "mimeType": "application/json",
                    "text": safe_json_dumps(contexts),
                }
            ]
        }

    # Tools

    async def handle_list_tools(self, params: Dict[str, Any], msg_id: Any) -> Dict[str, Any]:
        """List available tools with schemas and hints."""
        tools_list = []
        for schema_def in TOOLS_SCHEMAS:
            name = schema_def["name"]
            read_only = name in READ_ONLY_TOOLS
            tools_list.append({
                "name": name,
                "title": schema_def["title"],
                "description": schema_def["description"],
                "inputSchema": schema_def["inputSchema"],
                "annotations": {
                    "readOnlyHint": read_only,
                    "destructiveHint": name in DESTRUCTIVE_TOOLS,
                    "idempotentHint": name in IDEMPOTENT_TOOLS or read_only,
                    "openWorldHint": False,
                },
            })
        return {"tools": tools_list}

    async def handle_call_tool(self, params: Dict[str, Any], msg_id: Any) -> Dict[str, Any]:
        """
        Execute a single tool call.

        Malformed calls raise McpError. Backend failures during a well-formed
        call come back as a successful result flagged ``isError``.
        """
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise McpError(INVALID_PARAMS, "Missing or invalid tool name", {"received": params})

        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise McpError(INVALID_PARAMS, "Tool arguments must be an object", {"tool_name": name})

        handler = self._tools.get(name)
        if handler is None:
            raise McpError(METHOD_NOT_FOUND, f"Unknown tool: {name}", {"tool_name": name})
        validate_tool_arguments(name, arguments)

        metrics = McpMetrics(msg_id, name, clock=self.scheduler.now)
        try:
            try:
                result = await handler(arguments)
            except CortexError as exc:
                logger.warning("Tool %s failed against backend: %s", name, redact_secrets(str(exc)))
                result = text_result(f"Error running {name}: {_describe_backend_error(exc)}", is_error=True)

            for item in result["content"]:
                item["text"] = truncate_tool_text(item["text"], name, self.tool_response_max_chars)
            metrics.record_result(result)
            return result
        except Exception:
            metrics.record_exception()
            raise
        finally:
            metrics.log_telemetry()

    async def _do_get_contexts(self, args: Dict[str, Any]) -> Dict[str, Any]:
        contexts = await self.client.list_contexts()
        return text_result(format_context_listing(contexts))

    async def _do_get_file(self, args: Dict[str, Any]) -> Dict[str, Any]:
        file = await self.client.get_file(args["file_id"])
        return text_result(format_file(file))

    async def _do_add_file(self, args: Dict[str, Any]) -> Dict[str, Any]:
        outcome = await self.create_file(
            args["filename"],
            args["content"],
            args.get("file_type") or DEFAULT_FILE_TYPE,
        )
        heading = "File added successfully" if outcome.created else "File already exists"
        return text_result(format_file_summary(outcome.resource, heading))

    async def _do_generate_initial_context(self, args: Dict[str, Any]) -> Dict[str, Any]:
        outcome = await self.create_file(
            args.get("filename") or DEFAULT_INITIAL_CONTEXT_FILENAME,
            args["content"],
            args.get("file_type") or DEFAULT_INITIAL_CONTEXT_FILE_TYPE,
        )
        heading = "Initial context created" if outcome.created else "Initial context already exists"
        return text_result(format_file_summary(outcome.resource, heading))

    async def _do_update_file(self, args: Dict[str, Any]) -> Dict[str, Any]:
        file = await self.client.update_file(args["file_id"], args["filename"], args["content"])
        return text_result(format_file_summary(file, "File updated successfully"))

    async def _do_delete_file(self, args: Dict[str, Any]) -> Dict[str, Any]:
        await self.client.delete_file(args["file_id"])
        return text_result(f"File deleted successfully: {args['file_id']}")

    async def create_file(self, filename: str, content: str, file_type: str) -> CreateOutcome:
        """Create ``filename`` once per project, even under concurrent callers."""

        async def operation() -> CreateOutcome:
            # The in-process guard cannot see writes from other processes.
            existing = await self.client.find_file_by_name(filename)
            if existing is not None:
                logger.info("File %s already present in project %s; skipping write", filename, self.project_id)
                return CreateOutcome(resource=existing, created=False)
            try:
                created = await self.client.add_file(filename, content, file_type)
            except CortexAPIError as exc:
                if not _is_conflict(exc):
                    raise
                logger.info("Backend reported %s already exists; returning the existing file", filename)
                existing = await self.client.find_file_by_name(filename)
                return CreateOutcome(resource=existing or {"name": filename}, created=False)
            return CreateOutcome(resource=created, created=True)

        return await self.deduplicator.create_once(
            (self.project_id, filename),
            operation,
            lambda: self.client.find_file_by_name(filename),
        )

import time
import logging
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("Cortex.mcp.metrics")

DEFAULT_TOOL_CALL_WARN_MS = 10000.0


class McpMetrics:
    """
    Tracks outcome and payload size for a single MCP tool call.
    """
    def __init__(self, msg_id: Any, name: str, clock: Callable[[], float] = time.monotonic):
        self.msg_id = msg_id
        self.name = name
        self.response_chars = 0
        self.saw_tool_error = False
        self.saw_exception = False
        self._clock = clock
        self.started = clock()

    def record_result(self, result: Dict[str, Any]) -> None:
        for item in result.get("content") or []:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                self.response_chars += len(item["text"])
        if result.get("isError"):
            self.saw_tool_error = True

    def record_exception(self) -> None:
        self.saw_exception = True

    def get_outcome(self) -> str:
        if self.saw_exception:
            return "error"
        if self.saw_tool_error:
            return "tool_error"
        return "success"

    def elapsed_ms(self) -> float:
        return max(0.0, (self._clock() - self.started) * 1000.0)

    def log_telemetry(self, warn_threshold_ms: Optional[float] = None) -> None:
        """Log normalized telemetry for the tool call."""
        threshold = DEFAULT_TOOL_CALL_WARN_MS if warn_threshold_ms is None else warn_threshold_ms
        elapsed_ms = self.elapsed_ms()
        log_method = logger.warning if elapsed_ms >= threshold else logger.info
        log_method(
            "Tool call telemetry: name=%s id=%r outcome=%s elapsed_ms=%.1f response_chars=%d",
            self.name,
            self.msg_id,
            self.get_outcome(),
            elapsed_ms,
            self.response_chars,
        )

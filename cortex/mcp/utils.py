import json
import logging
import re
from typing import Any, Dict, Optional, List

logger = logging.getLogger("Cortex.mcp.utils")

DEFAULT_TOOL_RESPONSE_MAX_CHARS = 32768
_TRUNCATION_SUFFIX = "\n\n[Response truncated due to size limits]"

_BEARER_RE = re.compile(r"Bearer\s+[A-Za-z0-9._~+/=-]+")


def redact_secrets(text: str) -> str:
    """Mask bearer tokens before text is logged or shown to the model."""
    return _BEARER_RE.sub("Bearer [REDACTED]", text)


def truncate_tool_text(text: str, name: str, max_chars: int = DEFAULT_TOOL_RESPONSE_MAX_CHARS) -> str:
    """Apply the response length limit to tool output."""
    if len(text) > max_chars:
        logger.info("Truncating response for tool '%s' (%d -> %d chars)", name, len(text), max_chars)
        cutoff = max(0, max_chars - len(_TRUNCATION_SUFFIX))
        return text[:cutoff] + _TRUNCATION_SUFFIX
    return text


def safe_json_dumps(payload: Any) -> str:
    try:
        return json.dumps(payload, indent=2, ensure_ascii=False)
    except TypeError:
        return json.dumps(str(payload), indent=2)


def text_result(text: str, *, is_error: bool = False) -> Dict[str, Any]:
    result: Dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


def file_type_of(entry: Dict[str, Any]) -> str:
    metadata = entry.get("metadata") if isinstance(entry.get("metadata"), dict) else {}
    return (
        entry.get("mimeType")
        or entry.get("mime_type")
        or metadata.get("file_type")
        or entry.get("file_type")
        or "unknown"
    )


def format_context_listing(contexts: List[Any]) -> str:
    lines = []
    for entry in contexts:
        if not isinstance(entry, dict):
            continue
        lines.append(f"• {entry.get('name') or entry.get('filename')} ({entry.get('id')}) - {file_type_of(entry)}")
    return f"Found {len(lines)} context file(s):\n\n" + "\n".join(lines)


def format_file(file: Any) -> str:
    if not isinstance(file, dict):
        return safe_json_dumps(file)
    content = file.get("content")
    if not isinstance(content, str):
        content = safe_json_dumps(content)
    return (
        f"File: {file.get('name') or file.get('filename')}\n"
        f"Size: {file.get('size', len(content.encode('utf-8')))} bytes\n"
        f"Type: {file_type_of(file)}\n\n"
        f"Content:\n{content}"
    )


def format_file_summary(file: Any, heading: str) -> str:
    if not isinstance(file, dict):
        return f"{heading}:\n{safe_json_dumps(file)}"
    return (
        f"{heading}:\n"
        f"• Name: {file.get('name') or file.get('filename')}\n"
        f"• ID: {file.get('id', 'unknown')}\n"
        f"• Size: {file.get('size', 'unknown')} bytes\n"
        f"• Type: {file_type_of(file)}"
    )


def build_initialize_instructions(project_id: str, startup_warnings: Optional[List[str]] = None) -> str:
    """Build a set of instructions for the client during initialization."""
    base_instructions = (
        "MCP server for Cortex Context - provides access to project context files and tools "
        f"for AI coding assistance. All tools operate on project {project_id}. "
        "Use get_contexts to discover file IDs before reading, updating or deleting files."
    )
    if not startup_warnings:
        return base_instructions
    bullet_list = "\n".join(f"- {warning}" for warning in startup_warnings)
    return f"{base_instructions}\n\nStartup checks:\n{bullet_list}"

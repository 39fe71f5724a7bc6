from typing import List, Dict, Any

DEFAULT_INITIAL_CONTEXT_FILENAME = "project-context.md"
DEFAULT_INITIAL_CONTEXT_FILE_TYPE = "markdown"
DEFAULT_FILE_TYPE = "text"

# Arguments whose values must be UUID formatted.
UUID_ARGUMENTS = frozenset({"file_id"})

TOOLS_SCHEMAS: List[Dict[str, Any]] = [
    {
        "name": "get_contexts",
        "title": "Get Contexts",
        "description": "List every context file stored for the configured project, with each file's name, ID and type. Call this first to discover file IDs before using get_file, update_file or delete_file, and to check whether a file already exists before adding it.",
        "inputSchema": {
            "type": "object",
            "properties": {},
            "additionalProperties": False
        }
    },
    {
        "name": "get_file",
        "title": "Get File",
        "description": "Fetch the full content of one context file. Requires the file's UUID as returned by get_contexts; file names are not accepted.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "file_id": {"type": "string", "format": "uuid", "description": "File UUID (from get_contexts)."}
            },
            "required": ["file_id"],
            "additionalProperties": False
        }
    },
    {
        "name": "add_file",
        "title": "Add File",
        "description": "Add a new file to the project context. If a file with the same name already exists, the existing file is returned and nothing is written, so it is safe to retry. To change an existing file use update_file instead.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "filename": {"type": "string", "description": "Name of the file to add (e.g. 'architecture.md')."},
                "content": {"type": "string", "description": "Full content of the file."},
                "file_type": {"type": "string", "description": "Logical file type (e.g. javascript, text, json, markdown). Defaults to 'text'."}
            },
            "required": ["filename", "content"],
            "additionalProperties": False
        }
    },
    {
        "name": "generate_initial_context",
        "title": "Generate Initial Context",
        "description": "Store the initial overview of a project (goals, architecture, conventions, key commands) as its first context file. Use once when a project has no context yet; if the file already exists it is returned unchanged.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "The project overview to store."},
                "filename": {"type": "string", "default": DEFAULT_INITIAL_CONTEXT_FILENAME, "description": f"File name for the overview (default '{DEFAULT_INITIAL_CONTEXT_FILENAME}')."},
                "file_type": {"type": "string", "default": DEFAULT_INITIAL_CONTEXT_FILE_TYPE, "description": f"Logical file type (default '{DEFAULT_INITIAL_CONTEXT_FILE_TYPE}')."}
            },
            "required": ["content"],
            "additionalProperties": False
        }
    },
    {
        "name": "update_file",
        "title": "Update File",
        "description": "Replace the name and content of an existing context file. Requires the file's UUID from get_contexts. The whole content is replaced, so send the complete new text.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "file_id": {"type": "string", "format": "uuid", "description": "File UUID (from get_contexts)."},
                "filename": {"type": "string", "description": "New (or unchanged) file name."},
                "content": {"type": "string", "description": "Complete new file content."}
            },
            "required": ["file_id", "filename", "content"],
            "additionalProperties": False
        }
    },
    {
        "name": "delete_file",
        "title": "Delete File",
        "description": "Permanently delete a context file. Requires the file's UUID from get_contexts. This cannot be undone; confirm with the user first.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "file_id": {"type": "string", "format": "uuid", "description": "File UUID (from get_contexts)."}
            },
            "required": ["file_id"],
            "additionalProperties": False
        }
    },
]

TOOLS_BY_NAME: Dict[str, Dict[str, Any]] = {schema["name"]: schema for schema in TOOLS_SCHEMAS}

READ_ONLY_TOOLS = {"get_contexts", "get_file"}
DESTRUCTIVE_TOOLS = {"update_file", "delete_file"}
IDEMPOTENT_TOOLS = {"add_file", "generate_initial_context", "update_file", "delete_file"}

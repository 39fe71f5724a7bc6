"""
Cortex Adapter Configuration
----------------------------
Centralized configuration for the MCP adapter.
Loads from YAML config files and environment variables.

Precedence (lowest to highest): defaults, YAML file, environment, explicit
overrides (command line).
"""

import os
import logging
from typing import Optional, Dict, Any

from pydantic import BaseModel, ValidationError, field_validator

from cortex.core.validation import (
    MAX_TIMEOUT_MS,
    MIN_TOKEN_LENGTH,
    is_valid_timeout_ms,
    is_valid_token,
    is_valid_url,
    is_valid_uuid,
)

logger = logging.getLogger("Cortex.Config")

DEFAULT_SERVER_URL = "https://cortex-context-mcp.vercel.app"
DEFAULT_API_PREFIX = "/api/mcp"
DEFAULT_TIMEOUT_MS = 30000
DEFAULT_REQUEST_TIMEOUT_MS = 30000
DEFAULT_INIT_FALLBACK_MS = 15000

# Environment variable -> config field
_ENV_FIELDS = {
    "CORTEX_SERVER_URL": "server_url",
    "CORTEX_API_PREFIX": "api_prefix",
    "CORTEX_AUTH_TOKEN": "auth_token",
    "CORTEX_PROJECT_ID": "project_id",
    "CORTEX_TIMEOUT_MS": "timeout_ms",
    "CORTEX_REQUEST_TIMEOUT_MS": "request_timeout_ms",
    "CORTEX_INIT_FALLBACK_MS": "init_fallback_ms",
    "CORTEX_MAX_RETRIES": "max_retries",
    "CORTEX_TOOL_RESPONSE_MAX_CHARS": "tool_response_max_chars",
    "CORTEX_LOG_LEVEL": "log_level",
    "CORTEX_LOG_FILE": "log_file",
    "CORTEX_VERBOSE": "verbose",
}


class ConfigError(ValueError):
    """Raised when the adapter configuration is missing or invalid."""


class AdapterConfig(BaseModel):
    """Adapter configuration. Durations are in milliseconds."""
    server_url: str = DEFAULT_SERVER_URL
    api_prefix: str = DEFAULT_API_PREFIX
    auth_token: str
    project_id: str

    timeout_ms: float = DEFAULT_TIMEOUT_MS
    request_timeout_ms: float = DEFAULT_REQUEST_TIMEOUT_MS
    init_fallback_ms: float = DEFAULT_INIT_FALLBACK_MS

    max_retries: int = 3
    retry_base_delay_ms: float = 1000
    retry_max_jitter_ms: float = 1000

    tool_response_max_chars: int = 32768

    log_level: str = "INFO"
    log_file: Optional[str] = None
    verbose: bool = False

    @field_validator("server_url")
    @classmethod
    def _check_server_url(cls, v: str) -> str:
        if not is_valid_url(v):
            raise ValueError("Invalid server URL format")
        return v.rstrip("/")

    @field_validator("api_prefix")
    @classmethod
    def _normalize_api_prefix(cls, v: str) -> str:
        v = (v or "").strip().rstrip("/")
        if v and not v.startswith("/"):
            v = f"/{v}"
        return v

    @field_validator("auth_token")
    @classmethod
    def _check_token(cls, v: str) -> str:
        v = v.strip()
        if not is_valid_token(v):
            raise ValueError(f"Invalid auth token (must be at least {MIN_TOKEN_LENGTH} characters)")
        return v

    @field_validator("project_id")
    @classmethod
    def _check_project_id(cls, v: str) -> str:
        v = v.strip()
        if not is_valid_uuid(v):
            raise ValueError("Project ID must be a UUID")
        return v

    @field_validator("timeout_ms", "request_timeout_ms", "init_fallback_ms")
    @classmethod
    def _check_timeout(cls, v: float) -> float:
        if not is_valid_timeout_ms(v):
            raise ValueError(f"Invalid timeout value (must be 1-{MAX_TIMEOUT_MS}ms)")
        return v

    @field_validator("max_retries")
    @classmethod
    def _check_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries must be >= 0")
        return v

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, v: str) -> str:
        level = (v or "INFO").strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unsupported log level: {v}")
        return level

    @property
    def base_url(self) -> str:
        return f"{self.server_url}{self.api_prefix}"

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    def redacted(self) -> Dict[str, Any]:
        """Configuration snapshot that is safe to log."""
        data = self.model_dump()
        token = data.get("auth_token") or ""
        data["auth_token"] = f"{token[:4]}...{token[-2:]}" if len(token) > 8 else "***"
        return data

    @classmethod
    def from_env(cls) -> "AdapterConfig":
        """Load configuration from environment variables only."""
        return _build(env_overrides())

    @classmethod
    def from_yaml(cls, path: str) -> "AdapterConfig":
        """Load configuration from a YAML file, without environment overrides."""
        return _build(read_yaml(path))


def read_yaml(path: str) -> Dict[str, Any]:
    import yaml

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file is not valid YAML: {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a mapping: {path}")
    return data


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = {}
    for env_name, field_name in _ENV_FIELDS.items():
        raw = environ.get(env_name)
        if raw is None or raw.strip() == "":
            continue
        if field_name == "verbose":
            values[field_name] = raw.strip().lower() in ("1", "true", "yes", "on")
        else:
            values[field_name] = raw.strip()
    return values


def load_config(
    path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> AdapterConfig:
    """Layer defaults < YAML file < environment < overrides into one config."""
    merged: Dict[str, Any] = {}
    if path:
        merged.update(read_yaml(path))
    merged.update(env_overrides(environ))
    for key, value in (overrides or {}).items():
        if value is not None:
            merged[key] = value
    config = _build(merged)
    logger.debug("Loaded configuration: %s", config.redacted())
    return config


def _build(values: Dict[str, Any]) -> AdapterConfig:
    try:
        return AdapterConfig(**values)
    except ValidationError as exc:
        problems = []
        for err in exc.errors():
            loc = ".".join(str(part) for part in err.get("loc", ())) or "config"
            problems.append(f"{loc}: {err.get('msg')}")
        raise ConfigError("Invalid configuration: " + "; ".join(problems)) from exc

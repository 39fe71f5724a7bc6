"""
Shared input validators used by configuration and tool dispatch.
"""

import re
from typing import Any
from urllib.parse import urlparse

UUID_REGEX = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

MIN_TOKEN_LENGTH = 10
MAX_TOKEN_LENGTH = 1000
MAX_TIMEOUT_MS = 300_000


def is_valid_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(UUID_REGEX.match(value))


def is_valid_url(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def is_valid_token(value: Any) -> bool:
    return isinstance(value, str) and MIN_TOKEN_LENGTH <= len(value) <= MAX_TOKEN_LENGTH


def is_valid_timeout_ms(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return 0 < value <= MAX_TIMEOUT_MS

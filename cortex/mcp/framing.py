"""
Content-Length framing for the stdio transport.

A frame is ``Content-Length: <N>\\r\\n\\r\\n`` followed by exactly N bytes of
UTF-8 JSON. Lengths are byte counts, never character counts.
"""

import json
import logging
import re
from typing import Any, Dict, Iterator, Optional

logger = logging.getLogger("Cortex.mcp.framing")

CONTENT_LENGTH_HEADER = b"Content-Length"
HEADER_SEPARATOR = b"\r\n\r\n"

_CONTENT_LENGTH_RE = re.compile(rb"^content-length:[ \t]*(\d+)[ \t]*\r?$", re.IGNORECASE | re.MULTILINE)


class FrameDecoder:
    """
    Incremental decoder that turns arbitrary byte chunks into frame bodies.

    Feed chunks with :meth:`feed` and iterate to drain every body that is
    complete so far. Iteration stops when the buffer holds only a partial
    frame; feeding more bytes and iterating again resumes where it left off.

    A header block with no parsable Content-Length is discarded up to and
    including its separator, and scanning continues. The peer is not told.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self.resync_count = 0

    def feed(self, chunk: bytes) -> None:
        if chunk:
            self._buffer.extend(chunk)

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def next_body(self) -> Optional[bytes]:
        """Return the next complete body, or None if more bytes are needed."""
        while True:
            header_end = self._buffer.find(HEADER_SEPARATOR)
            if header_end == -1:
                return None

            header = bytes(self._buffer[:header_end])
            body_start = header_end + len(HEADER_SEPARATOR)

            match = _CONTENT_LENGTH_RE.search(header)
            if match is None:
                self.resync_count += 1
                logger.warning(
                    "Discarding frame header without a valid Content-Length: %r",
                    header[:100],
                )
                del self._buffer[:body_start]
                continue

            length = int(match.group(1))
            if len(self._buffer) < body_start + length:
                return None

            body = bytes(self._buffer[body_start:body_start + length])
            del self._buffer[:body_start + length]
            return body

    def __iter__(self) -> Iterator[bytes]:
        while True:
            body = self.next_body()
            if body is None:
                return
            yield body


def encode_frame(message: Dict[str, Any]) -> bytes:
    """Serialize ``message`` as one frame. Non-ASCII text is escaped, so lone surrogates encode too."""
    body = json.dumps(message).encode("ascii")
    return CONTENT_LENGTH_HEADER + b": " + str(len(body)).encode("ascii") + HEADER_SEPARATOR + body


def decode_body(body: bytes) -> Any:
    """Decode a frame body. Raises ValueError on invalid UTF-8 or JSON, RecursionError on absurd nesting."""
    return json.loads(body.decode("utf-8"))

"""
Keyed single-flight guard for backend resource creation.

Two callers creating the same (project, name) at the same time must not
both reach the backend. The first caller registers a pending operation for
the key; later callers wait on it and then look the resource up instead of
writing again.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

logger = logging.getLogger("Cortex.mcp.dedup")

DedupKey = Tuple[str, str]


@dataclass
class CreateOutcome:
    resource: Dict[str, Any]
    created: bool


class WriteDeduplicator:
    """
    Owned by one dispatcher and passed by reference; no process-wide state.

    The check for a pending entry and the registration of a new one run
    with no await in between, so two callers can never both see "nothing
    pending" for the same key.
    """

    def __init__(self) -> None:
        self._pending: Dict[DedupKey, "asyncio.Task[CreateOutcome]"] = {}

    def __contains__(self, key: DedupKey) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    async def create_once(
        self,
        key: DedupKey,
        operation: Callable[[], Awaitable[CreateOutcome]],
        lookup: Callable[[], Awaitable[Optional[Dict[str, Any]]]],
    ) -> CreateOutcome:
        while True:
            pending = self._pending.get(key)
            if pending is None:
                break

            logger.info("Creation already in flight for %s; waiting for it to settle", key)
            await asyncio.wait({pending})
            if not pending.cancelled() and pending.exception() is not None:
                logger.info("In-flight creation for %s failed (%s); re-checking backend", key, pending.exception())

            existing = await lookup()
            if existing is not None:
                return CreateOutcome(resource=existing, created=False)

        task = asyncio.ensure_future(self._settle(key, operation))
        self._pending[key] = task
        return await asyncio.shield(task)

    async def _settle(self, key: DedupKey, operation: Callable[[], Awaitable[CreateOutcome]]) -> CreateOutcome:
        try:
            return await operation()
        finally:
            if self._pending.get(key) is asyncio.current_task():
                del self._pending[key]

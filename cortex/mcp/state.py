"""
Session lifecycle state and the timer seam shared by the router and dispatcher.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from .protocol import DEFAULT_PROTOCOL_VERSION


class SessionPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"


class SessionEvent(str, Enum):
    INITIALIZE = "initialize"
    INITIALIZED = "initialized"
    FALLBACK_TIMEOUT = "fallback_timeout"
    SHUTDOWN = "shutdown"


# Every legal transition. Anything not listed leaves the phase unchanged.
TRANSITIONS: Dict[Tuple[SessionPhase, SessionEvent], SessionPhase] = {
    (SessionPhase.UNINITIALIZED, SessionEvent.INITIALIZE): SessionPhase.INITIALIZING,
    (SessionPhase.UNINITIALIZED, SessionEvent.INITIALIZED): SessionPhase.READY,
    (SessionPhase.INITIALIZING, SessionEvent.INITIALIZED): SessionPhase.READY,
    (SessionPhase.INITIALIZING, SessionEvent.FALLBACK_TIMEOUT): SessionPhase.READY,
    (SessionPhase.UNINITIALIZED, SessionEvent.SHUTDOWN): SessionPhase.SHUTTING_DOWN,
    (SessionPhase.INITIALIZING, SessionEvent.SHUTDOWN): SessionPhase.SHUTTING_DOWN,
    (SessionPhase.READY, SessionEvent.SHUTDOWN): SessionPhase.SHUTTING_DOWN,
}


@dataclass
class ProtocolSession:
    phase: SessionPhase = SessionPhase.UNINITIALIZED
    protocol_version: str = DEFAULT_PROTOCOL_VERSION
    client_info: Dict[str, Any] = field(default_factory=dict)
    client_capabilities: Dict[str, Any] = field(default_factory=dict)
    initialize_started_at: Optional[float] = None

    def apply(self, event: SessionEvent) -> bool:
        """Apply ``event``; returns False when it is not legal in the current phase."""
        target = TRANSITIONS.get((self.phase, event))
        if target is None:
            return False
        self.phase = target
        return True

    @property
    def ready(self) -> bool:
        return self.phase is SessionPhase.READY

    @property
    def shutting_down(self) -> bool:
        return self.phase is SessionPhase.SHUTTING_DOWN


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Clock + timer source. Tests swap in a virtual clock."""

    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Scheduler backed by the running asyncio loop and the monotonic clock."""

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)

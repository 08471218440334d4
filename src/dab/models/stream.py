"""Stream session and progress event models."""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, PrivateAttr


class StreamState(str, Enum):
    """Lifecycle of a progress subscription."""

    PENDING = "pending"
    OPEN = "open"
    ACTIVE = "active"
    CLOSED = "closed"


class StreamEventKind(str, Enum):
    """Closed set of event kinds per operation."""

    CONNECTED = "connected"
    START = "start"
    OUTPUT = "output"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_KINDS = frozenset({StreamEventKind.COMPLETE, StreamEventKind.ERROR, StreamEventKind.CANCELLED})


def classify_event_type(event_type: str) -> Optional[Tuple[Optional[str], StreamEventKind]]:
    """Split an event type such as ``ping_output`` into operation and kind.

    Returns ``None`` for types outside the closed set.
    """
    if event_type == StreamEventKind.CONNECTED.value:
        return None, StreamEventKind.CONNECTED

    operation, sep, suffix = event_type.rpartition("_")
    if not sep or not operation:
        return None
    try:
        kind = StreamEventKind(suffix)
    except ValueError:
        return None
    if kind == StreamEventKind.CONNECTED:
        return None
    return operation, kind


def event_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class StreamEvent(BaseModel):
    """One progress or lifecycle event received for a correlation id."""

    type: str = Field(..., description="Wire event type, e.g. ping_output")
    kind: StreamEventKind = Field(..., description="Classified event kind")
    operation: Optional[str] = Field(None, description="Operation prefix, e.g. ping")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Raw event object")

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    @property
    def output(self) -> Optional[str]:
        return self.payload.get("output")


class StreamSession(BaseModel):
    """Registry entry for one correlation id."""

    correlation_id: str = Field(..., min_length=1)
    state: StreamState = Field(default=StreamState.PENDING)
    last_event_type: Optional[str] = None
    events: List[StreamEvent] = Field(default_factory=list)

    _connected: asyncio.Event = PrivateAttr(default_factory=asyncio.Event)
    _closed: asyncio.Event = PrivateAttr(default_factory=asyncio.Event)

    @property
    def is_closed(self) -> bool:
        return self.state == StreamState.CLOSED

    @property
    def outputs(self) -> List[str]:
        return [event.output or "" for event in self.events if event.kind == StreamEventKind.OUTPUT]

    @property
    def terminal_events(self) -> List[StreamEvent]:
        return [event for event in self.events if event.is_terminal]

    def mark_connected(self) -> None:
        if self.state == StreamState.PENDING:
            self.state = StreamState.OPEN
        self._connected.set()

    def mark_closed(self) -> None:
        self.state = StreamState.CLOSED
        self._connected.set()
        self._closed.set()

    async def wait_connected(self) -> None:
        await self._connected.wait()

    async def wait_closed(self) -> None:
        await self._closed.wait()

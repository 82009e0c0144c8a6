"""Domain events and the outbound event channel.

Every component emits onto an ``EventBus`` handed to it at construction.
Delivery is synchronous on the event-loop thread, in emission order, so events
from a single source (one transcript file, one subprocess) arrive in the order
they were produced. Nothing is promised across sources.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Annotated, Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, Field

from agent_hq.date_utils import utc_now
from agent_hq.models import Message, SessionStatus

logger = logging.getLogger("agent_hq.events")

StructuredKind = Literal["assistant-message", "tool-use", "tool-result"]


class DomainEvent(BaseModel):
    """Base model for events crossing the core boundary."""

    event: str
    sessionId: str
    emittedAt: datetime = Field(default_factory=utc_now)


class SessionSnapshotUpdated(DomainEvent):
    """A transcript file for the session grew."""

    event: Literal["session-snapshot-updated"] = "session-snapshot-updated"
    lastMessageAt: datetime
    filePath: str
    agentId: Optional[str] = None


class NewMessage(DomainEvent):
    """One message appended to a transcript.

    ``agentId`` names the subagent file the message was read from, or is None
    for the primary transcript.
    """

    event: Literal["new-message"] = "new-message"
    message: Message
    agentId: Optional[str] = None


class SessionStatusChanged(DomainEvent):
    """Emitted by the process controller on spawn and exit."""

    event: Literal["session-status-changed"] = "session-status-changed"
    status: SessionStatus


class RawOutput(DomainEvent):
    event: Literal["raw-output"] = "raw-output"
    chunk: str


class ProcessErrorOutput(DomainEvent):
    """Standard-error text from a controlled subprocess. Non-fatal."""

    event: Literal["process-error-output"] = "process-error-output"
    chunk: str


class StructuredOutput(DomainEvent):
    event: Literal["structured-output"] = "structured-output"
    kind: StructuredKind
    payload: dict[str, Any] = Field(default_factory=dict)


AnyEvent = Annotated[
    Union[
        SessionSnapshotUpdated,
        NewMessage,
        SessionStatusChanged,
        RawOutput,
        ProcessErrorOutput,
        StructuredOutput,
    ],
    Field(discriminator="event"),
]

Listener = Callable[[DomainEvent], None]


class EventBus:
    """Observer registry plus queue fan-out for async consumers."""

    def __init__(self, queue_maxsize: int = 1000) -> None:
        self._listeners: list[Listener] = []
        self._queues: list[asyncio.Queue[DomainEvent]] = []
        self._queue_maxsize = queue_maxsize

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a synchronous listener. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def queue(self) -> asyncio.Queue[DomainEvent]:
        """Create a bounded subscriber queue that receives every event."""
        queue: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=self._queue_maxsize)
        self._queues.append(queue)
        return queue

    def unsubscribe_queue(self, queue: asyncio.Queue[DomainEvent]) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def emit(self, event: DomainEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed on %s for session %s", event.event, event.sessionId)
        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping %s event for slow subscriber", event.event)

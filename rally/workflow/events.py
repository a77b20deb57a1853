"""Rally events and the channel that carries them to a consumer.

Protocol events follow the state machine one-to-one and are never dropped.
Informational events (agent streaming, log lines) may be shed under
back-pressure, oldest first.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar

from rally.lib.types import PermissionRequest, ReviewerOutput, RevieweeOutput

if TYPE_CHECKING:
    from rally.workflow.orchestrator import RallyOutcome

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 256


@dataclass(frozen=True)
class RallyEvent:
    informational: ClassVar[bool] = False
    terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class RoundStarted(RallyEvent):
    round: int


@dataclass(frozen=True)
class ReviewerOutputReceived(RallyEvent):
    round: int
    output: ReviewerOutput


@dataclass(frozen=True)
class RevieweeOutputReceived(RallyEvent):
    round: int
    output: RevieweeOutput


@dataclass(frozen=True)
class ClarificationRequested(RallyEvent):
    request_id: str
    question: str


@dataclass(frozen=True)
class ClarificationAnswered(RallyEvent):
    request_id: str
    answer: str | None  # None when the operator skipped the question


@dataclass(frozen=True)
class PermissionRequested(RallyEvent):
    request_id: str
    request: PermissionRequest


@dataclass(frozen=True)
class PermissionGranted(RallyEvent):
    request_id: str
    action: str


@dataclass(frozen=True)
class PermissionDenied(RallyEvent):
    request_id: str
    action: str


@dataclass(frozen=True)
class RallyApproved(RallyEvent):
    terminal: ClassVar[bool] = True
    outcome: "RallyOutcome"


@dataclass(frozen=True)
class RallyExhausted(RallyEvent):
    terminal: ClassVar[bool] = True
    outcome: "RallyOutcome"


@dataclass(frozen=True)
class RallyFailed(RallyEvent):
    terminal: ClassVar[bool] = True
    outcome: "RallyOutcome"


@dataclass(frozen=True)
class RallyCancelled(RallyEvent):
    terminal: ClassVar[bool] = True
    outcome: "RallyOutcome"


# Agent activity mirrored from the backend while a turn is running


@dataclass(frozen=True)
class AgentThinking(RallyEvent):
    informational: ClassVar[bool] = True
    agent: str
    text: str


@dataclass(frozen=True)
class AgentText(RallyEvent):
    informational: ClassVar[bool] = True
    agent: str
    text: str


@dataclass(frozen=True)
class AgentToolUse(RallyEvent):
    informational: ClassVar[bool] = True
    agent: str
    tool: str
    summary: str


@dataclass(frozen=True)
class AgentToolResult(RallyEvent):
    informational: ClassVar[bool] = True
    agent: str
    tool: str
    summary: str


@dataclass(frozen=True)
class Log(RallyEvent):
    informational: ClassVar[bool] = True
    message: str


class ChannelClosed(Exception):
    """send() after close()."""


class EventChannel:
    """
    Single-consumer event queue that never blocks the producer.

    When the buffer is full, the oldest informational event is discarded to
    make room. Protocol and terminal events are always kept, so the buffer
    may grow past capacity if a consumer stalls during a flood of them.

    Usage:
        channel = EventChannel()
        channel.send(RoundStarted(round=1))
        async for event in channel:
            ...
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.dropped = 0
        self._buffer: deque[RallyEvent] = deque()
        self._closed = False
        self._ready = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._buffer)

    def send(self, event: RallyEvent) -> None:
        if self._closed and event.informational:
            # Late agent output after the rally ended
            self.dropped += 1
            return
        if self._closed:
            raise ChannelClosed(f"Channel closed, cannot send {type(event).__name__}")
        if len(self._buffer) >= self.capacity:
            if event.informational and not self._has_informational():
                self.dropped += 1
                return
            self._drop_oldest_informational()
        self._buffer.append(event)
        self._ready.set()

    def _has_informational(self) -> bool:
        return any(e.informational for e in self._buffer)

    def _drop_oldest_informational(self) -> None:
        for i, event in enumerate(self._buffer):
            if event.informational:
                del self._buffer[i]
                self.dropped += 1
                logger.debug(f"[EVENTS] Dropped {type(event).__name__} (consumer behind)")
                return

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    async def receive(self) -> RallyEvent | None:
        """Next event, or None once the channel is closed and drained."""
        while not self._buffer:
            if self._closed:
                return None
            self._ready.clear()
            await self._ready.wait()
        return self._buffer.popleft()

    def drain(self) -> list[RallyEvent]:
        """Take everything buffered right now without waiting."""
        events = list(self._buffer)
        self._buffer.clear()
        return events

    def __aiter__(self):
        return self

    async def __anext__(self) -> RallyEvent:
        event = await self.receive()
        if event is None:
            raise StopAsyncIteration
        return event

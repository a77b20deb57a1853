"""
Agent adapter interface and backend selection.

The orchestrator only talks to agents through AgentAdapter. Each backend
(claude, codex) implements it and owns at most one reviewer session and one
reviewee session at a time. Adapters are built, then bound to an event sink,
then used; an adapter is never reused for another rally.
"""

import logging
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from rally.lib.errors import NoActiveSession, SinkNotBound
from rally.lib.types import Context, ReviewerOutput, RevieweeOutput

if TYPE_CHECKING:
    from rally.lib.config import RallyConfig
    from rally.workflow.events import RallyEvent

logger = logging.getLogger(__name__)

REVIEWER = "reviewer"
REVIEWEE = "reviewee"


class EventSink(Protocol):
    def send(self, event: "RallyEvent") -> None: ...


@runtime_checkable
class AgentAdapter(Protocol):
    """What the orchestrator needs from an agent backend."""

    def identify(self) -> str:
        """Stable backend name, for logs only."""
        ...

    def bind_event_sink(self, sink: EventSink) -> None: ...

    async def run_reviewer(self, prompt: str, context: Context) -> ReviewerOutput: ...

    async def run_reviewee(self, prompt: str, context: Context) -> RevieweeOutput: ...

    async def continue_reviewer(self, message: str) -> ReviewerOutput: ...

    async def continue_reviewee(self, message: str) -> RevieweeOutput: ...

    def grant_reviewee_tool(self, tool: str) -> None:
        """Permit a tool for every later reviewee turn. Idempotent."""
        ...

    async def stop(self) -> None:
        """Terminate any backend process still running."""
        ...


class AdapterState:
    """
    Bookkeeping shared by the concrete adapters.

    Holds the bound sink and the session id of each role, and turns misuse
    (no sink, continue before run) into SinkNotBound / NoActiveSession.
    """

    def __init__(self, agent: str):
        self.agent = agent
        self._sink: EventSink | None = None
        self._sessions: dict[str, str | None] = {REVIEWER: None, REVIEWEE: None}
        self._contexts: dict[str, Context | None] = {REVIEWER: None, REVIEWEE: None}

    def bind(self, sink: EventSink) -> None:
        if self._sink is not None and self._sink is not sink:
            logger.warning(f"[{self.agent.upper()}] Rebinding event sink")
        self._sink = sink

    def require_sink(self) -> EventSink:
        if self._sink is None:
            raise SinkNotBound(self.agent)
        return self._sink

    def emit(self, event: "RallyEvent") -> None:
        self.require_sink().send(event)

    def start_session(self, role: str, context: Context) -> None:
        """Forget any previous session for role; the next id recorded wins."""
        self._sessions[role] = None
        self._contexts[role] = context

    def record_session(self, role: str, session_id: str | None) -> None:
        if session_id:
            self._sessions[role] = session_id

    def session_id(self, role: str) -> str | None:
        return self._sessions[role]

    def require_session(self, role: str) -> tuple[str, Context]:
        session_id = self._sessions[role]
        context = self._contexts[role]
        if session_id is None or context is None:
            raise NoActiveSession(self.agent, role)
        return session_id, context


class SupportedAgent(Enum):
    CLAUDE = "claude"
    CODEX = "codex"

    @classmethod
    def from_name(cls, name: str) -> "SupportedAgent | None":
        """Case-insensitive lookup; None for anything unsupported."""
        name = name.strip().lower()
        for member in cls:
            if member.value == name:
                return member
        return None

    @classmethod
    def names(cls) -> list[str]:
        return [m.value for m in cls]


def create_adapter(name: str, config: "RallyConfig | None" = None) -> AgentAdapter:
    """
    Build an unbound adapter for a backend name.

    Args:
        name: Backend name, matched case-insensitively
        config: Supplies extra tool allow-lists; defaults apply when None

    Raises:
        ValueError: If the name is not a supported backend
    """
    agent = SupportedAgent.from_name(name)
    if agent is None:
        raise ValueError(f"Unsupported agent: {name}. Supported: {', '.join(SupportedAgent.names())}")

    reviewer_tools = list(config.reviewer_additional_tools) if config else []
    reviewee_tools = list(config.reviewee_additional_tools) if config else []

    if agent == SupportedAgent.CLAUDE:
        from rally.agents.claude import ClaudeAdapter
        return ClaudeAdapter(reviewer_tools=reviewer_tools, reviewee_tools=reviewee_tools)

    from rally.agents.codex import CodexAdapter
    return CodexAdapter()

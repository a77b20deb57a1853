"""
Error taxonomy for rallies.

Every error carries a FailureKind so the orchestrator can turn it into a
structured RallyFailed outcome and the CLI can map it to an exit code.
"""

from enum import Enum


class FailureKind(Enum):
    MISSING_RESULT = "missing_result"
    MALFORMED_SHAPE = "malformed_shape"
    UNKNOWN_ACTION = "unknown_action"
    UNKNOWN_STATUS = "unknown_status"
    AGENT_FAILURE = "agent_failure"
    NO_ACTIVE_SESSION = "no_active_session"
    SINK_NOT_BOUND = "sink_not_bound"
    REVIEWEE_ERROR = "reviewee_error"
    BUDGET_EXCEEDED = "budget_exceeded"
    PROMPT_ERROR = "prompt_error"

    @property
    def is_protocol(self) -> bool:
        return self in _PROTOCOL_KINDS


_PROTOCOL_KINDS = {
    FailureKind.MISSING_RESULT,
    FailureKind.MALFORMED_SHAPE,
    FailureKind.UNKNOWN_ACTION,
    FailureKind.UNKNOWN_STATUS,
}


class RallyError(Exception):
    """Base class for errors that end a rally."""
    kind: FailureKind = FailureKind.AGENT_FAILURE


class ProtocolError(RallyError):
    """Agent output cannot be trusted for control flow."""


class MissingResult(ProtocolError):
    kind = FailureKind.MISSING_RESULT

    def __init__(self, agent: str):
        self.agent = agent
        super().__init__(f"No result in {agent} response")


class MalformedShape(ProtocolError):
    kind = FailureKind.MALFORMED_SHAPE

    def __init__(self, agent: str, role: str, detail: str):
        self.agent = agent
        self.role = role
        self.detail = detail
        super().__init__(f"Failed to parse {role} output from {agent}: {detail}")


class UnknownAction(ProtocolError):
    kind = FailureKind.UNKNOWN_ACTION

    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Unknown review action: {value}")


class UnknownStatus(ProtocolError):
    kind = FailureKind.UNKNOWN_STATUS

    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Unknown reviewee status: {value}")


class AgentFailure(RallyError):
    """The agent session failed to start, crashed or timed out."""
    kind = FailureKind.AGENT_FAILURE


class NoActiveSession(RallyError):
    """continue_* was called before the matching run_*."""
    kind = FailureKind.NO_ACTIVE_SESSION

    def __init__(self, agent: str, role: str):
        self.agent = agent
        self.role = role
        super().__init__(f"No active {role} session on {agent} adapter")


class SinkNotBound(RallyError):
    """A session method was called before bind_event_sink()."""
    kind = FailureKind.SINK_NOT_BOUND

    def __init__(self, agent: str):
        self.agent = agent
        super().__init__(f"{agent} adapter used before bind_event_sink()")


class RevieweeReportedError(RallyError):
    """The reviewee gave up and reported status=error."""
    kind = FailureKind.REVIEWEE_ERROR


class BudgetExceeded(RallyError):
    kind = FailureKind.BUDGET_EXCEEDED

    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__(f"Rally exceeded its {seconds:g}s budget")


class UnknownRequest(KeyError):
    """A decision referenced a request id that is not outstanding."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(request_id)

    def __str__(self) -> str:
        return f"No outstanding request {self.request_id}"

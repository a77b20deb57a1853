"""Rally session state machine using the transitions library.

One RallySession per rally. It owns the round counter, the set of tools
granted to the reviewee and the terminal outcome, and it only moves along
the transitions listed below.

Usage:
    from rally.workflow.fsm import RallySession

    session = RallySession("owner/repo#42")
    session.begin_review()   # idle -> reviewer_turn
    session.request_fix()    # reviewer_turn -> reviewee_turn
    session.finish_round()   # round += 1, then reviewer_turn (or exhausted)
"""

import logging
from datetime import datetime

from transitions import Machine

logger = logging.getLogger(__name__)


STATES = [
    "idle",
    "reviewer_turn",
    "reviewee_turn",
    "awaiting_clarification",
    "awaiting_permission",
    "approved",
    "exhausted",
    "failed",
    "cancelled",
]

TERMINAL_STATES = {"approved", "exhausted", "failed", "cancelled"}

ACTIVE_STATES = [s for s in STATES if s not in TERMINAL_STATES]

TRANSITIONS = [
    # Reviewer turns
    {"trigger": "begin_review", "source": "idle", "dest": "reviewer_turn"},
    {"trigger": "approve", "source": "reviewer_turn", "dest": "approved"},
    {"trigger": "request_fix", "source": "reviewer_turn", "dest": "reviewee_turn"},

    # Reviewee completed: next round, or out of rounds
    {"trigger": "finish_round", "source": "reviewee_turn", "dest": "reviewer_turn",
     "conditions": "has_rounds_left", "before": "advance_round"},
    {"trigger": "finish_round", "source": "reviewee_turn", "dest": "exhausted",
     "unless": "has_rounds_left", "before": "advance_round"},

    # Externally gated pauses; neither consumes a round
    {"trigger": "need_clarification", "source": "reviewee_turn", "dest": "awaiting_clarification"},
    {"trigger": "need_permission", "source": "reviewee_turn", "dest": "awaiting_permission"},
    {"trigger": "resume_fix", "source": "awaiting_clarification", "dest": "reviewee_turn"},
    {"trigger": "resume_fix", "source": "awaiting_permission", "dest": "reviewee_turn"},

    # Abnormal ends, reachable from anywhere still running
    {"trigger": "fail", "source": ACTIVE_STATES, "dest": "failed"},
    {"trigger": "cancel", "source": ACTIVE_STATES, "dest": "cancelled"},
]


class RallySession:
    """State of one rally.

    - round never decreases
    - granted_tools never shrinks
    - outcome is recorded at most once
    """

    def __init__(self, label: str, max_rounds: int = 10):
        """
        Args:
            label: Name used in log lines (e.g. "owner/repo#42")
            max_rounds: Completed reviewee turns allowed before exhaustion
        """
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self.label = label
        self.max_rounds = max_rounds
        self.round = 1
        self.granted_tools: set[str] = set()
        self.outcome = None
        self.started_at = datetime.now().isoformat()
        self.updated_at = self.started_at

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial="idle",
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    def has_rounds_left(self, event=None) -> bool:
        """True if the round after this one is still within max_rounds."""
        return self.round < self.max_rounds

    def advance_round(self, event=None) -> None:
        self.round += 1

    def on_state_change(self, event) -> None:
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name
        self.updated_at = datetime.now().isoformat()

        logger.info(f"[FSM] {self.label}: {from_state} -> {to_state} ({trigger}, round {self.round})")

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def grant_tool(self, tool: str) -> bool:
        """Add a tool to the permitted set. Returns False if it was already there."""
        if tool in self.granted_tools:
            return False
        self.granted_tools.add(tool)
        return True

    def record_outcome(self, outcome) -> None:
        if self.outcome is not None:
            raise RuntimeError(f"{self.label}: outcome already recorded ({self.outcome.kind.value})")
        self.outcome = outcome

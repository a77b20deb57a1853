"""
Rally orchestrator.

Drives one rally: reviewer turn, reviewee turn, repeat, until the reviewer
approves, the round limit is hit, something fails, or the operator aborts.
Clarification and permission requests from the reviewee pause the rally
until the consumer answers through the decision methods.

Usage:
    orchestrator = Orchestrator(context, create_adapter("claude"), create_adapter("codex"))
    task = asyncio.create_task(orchestrator.run())
    async for event in orchestrator.events:
        if isinstance(event, PermissionRequested):
            orchestrator.grant_permission(event.request_id)
    outcome = await task
"""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, TypeVar

from rally.agents.adapter import REVIEWEE, REVIEWER, AgentAdapter
from rally.lib.errors import (
    AgentFailure,
    BudgetExceeded,
    FailureKind,
    RallyError,
    RevieweeReportedError,
    UnknownRequest,
)
from rally.lib.prompts import (
    PromptError,
    clarification_skipped_prompt,
    permission_denied_prompt,
    permission_granted_prompt,
    rereview_prompt,
    reviewee_prompt,
    reviewer_prompt,
)
from rally.lib.types import Context, ReviewAction, ReviewerOutput, RevieweeOutput, RevieweeStatus
from rally.workflow.events import (
    ClarificationAnswered,
    ClarificationRequested,
    EventChannel,
    Log,
    PermissionDenied,
    PermissionGranted,
    PermissionRequested,
    RallyApproved,
    RallyCancelled,
    RallyEvent,
    RallyExhausted,
    RallyFailed,
    RevieweeOutputReceived,
    ReviewerOutputReceived,
    RoundStarted,
)
from rally.workflow.fsm import RallySession
from rally.workflow.host import PullRequestHost

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ROUNDS = 10
DEFAULT_TIMEOUT_SECS = 600

CLARIFICATION = "clarification"
PERMISSION = "permission"

_REQUEST_PREFIX = {CLARIFICATION: "CLQ", PERMISSION: "PRM"}


class OutcomeKind(Enum):
    APPROVED = "approved"
    EXHAUSTED = "exhausted"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RallyOutcome:
    """How a rally ended.

    review is the last reviewer output seen (the approving one for
    APPROVED). failure_kind is set only for FAILED.
    """
    kind: OutcomeKind
    round: int
    review: ReviewerOutput | None = None
    failure_kind: FailureKind | None = None
    message: str = ""


_TERMINAL_EVENTS = {
    OutcomeKind.APPROVED: RallyApproved,
    OutcomeKind.EXHAUSTED: RallyExhausted,
    OutcomeKind.FAILED: RallyFailed,
    OutcomeKind.CANCELLED: RallyCancelled,
}


@dataclass
class _PendingDecision:
    kind: str
    future: asyncio.Future


class Orchestrator:
    """Runs one rally between a reviewer adapter and a reviewee adapter.

    Single use: build, await run() once, read the outcome. The decision
    methods and abort() must be called from the event loop running run().
    """

    def __init__(
        self,
        context: Context,
        reviewer: AgentAdapter,
        reviewee: AgentAdapter,
        *,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        timeout_secs: float = DEFAULT_TIMEOUT_SECS,
        budget_secs: float | None = None,
        events: EventChannel | None = None,
        host: PullRequestHost | None = None,
        prompt_dir: str | None = None,
    ):
        """
        Args:
            context: PR under review
            reviewer: Adapter for the reviewer role (bound to events here)
            reviewee: Adapter for the reviewee role (bound to events here)
            max_rounds: Reviewer turns allowed before the rally is exhausted
            timeout_secs: Limit for each single agent call
            budget_secs: Optional limit for the whole rally, human waits included
            events: Channel to emit into; a new one is created if omitted
            host: Publishes turns to the PR and refreshes diff/comments;
                without one the rally runs purely on context
            prompt_dir: Directory with prompt template overrides
        """
        if timeout_secs <= 0:
            raise ValueError("timeout_secs must be positive")
        self.context = context
        self.reviewer = reviewer
        self.reviewee = reviewee
        self.timeout_secs = timeout_secs
        self.budget_secs = budget_secs
        self.host = host
        self.prompt_dir = prompt_dir
        self.events = events if events is not None else EventChannel()
        self.session = RallySession(f"{context.repo}#{context.pr_number}", max_rounds=max_rounds)

        self._pending: dict[str, _PendingDecision] = {}
        self._request_counts = {CLARIFICATION: 0, PERMISSION: 0}
        self._task: asyncio.Task | None = None
        self._abort_reason: str | None = None
        self._last_review: ReviewerOutput | None = None

        reviewer.bind_event_sink(self.events)
        reviewee.bind_event_sink(self.events)
        if host is not None:
            host.attach(self._log)

    @property
    def outcome(self) -> RallyOutcome | None:
        return self.session.outcome

    @property
    def pending_requests(self) -> list[str]:
        """Ids of clarification/permission requests awaiting a decision."""
        return [rid for rid, p in self._pending.items() if not p.future.done()]

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def run(self) -> RallyOutcome:
        """
        Run the rally to its end and return the outcome.

        Exactly one terminal event is emitted and the event channel is closed
        afterwards. Cancelling the task running this method emits
        RallyCancelled and re-raises; abort() returns a CANCELLED outcome.
        """
        if self.session.state != "idle":
            raise RuntimeError("Orchestrator.run() can only be called once")
        self._task = asyncio.current_task()
        logger.info(
            f"[RALLY] Starting {self.session.label}: reviewer={self.reviewer.identify()}, "
            f"reviewee={self.reviewee.identify()}, max_rounds={self.session.max_rounds}"
        )

        if self._abort_reason is not None:
            self.session.cancel()
            return self._finish(OutcomeKind.CANCELLED, message=self._abort_reason)

        try:
            return await self._run_with_budget()
        except asyncio.CancelledError:
            await self._stop_agents()
            if not self.session.is_terminal:
                self.session.cancel()
            outcome = self._finish(OutcomeKind.CANCELLED, message=self._abort_reason or "Rally cancelled")
            if self._abort_reason is not None and self._task.uncancel() == 0:
                return outcome
            raise
        except RallyError as e:
            return self._fail(e.kind, str(e))
        except PromptError as e:
            return self._fail(FailureKind.PROMPT_ERROR, str(e))
        except Exception as e:
            if self.session.outcome is not None:
                raise
            logger.exception(f"[RALLY] {self.session.label}: unexpected error")
            await self._stop_agents()
            return self._fail(FailureKind.AGENT_FAILURE, f"{type(e).__name__}: {e}")

    def abort(self, reason: str = "Aborted by user") -> None:
        """Cancel the rally at its current suspension point."""
        if self.session.is_terminal or self._abort_reason is not None:
            return
        self._abort_reason = reason
        logger.info(f"[RALLY] {self.session.label}: abort requested ({reason})")
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run_with_budget(self) -> RallyOutcome:
        if self.budget_secs is None:
            return await self._rally()
        try:
            async with asyncio.timeout(self.budget_secs):
                return await self._rally()
        except TimeoutError:
            await self._stop_agents()
            raise BudgetExceeded(self.budget_secs) from None

    async def _rally(self) -> RallyOutcome:
        self.session.begin_review()
        follow_up: str | None = None

        while True:
            current = self.session.round
            self._send(RoundStarted(current))

            # 1. Reviewer turn
            if follow_up is None:
                prompt = reviewer_prompt(self.context, current, self.prompt_dir)
                review = await self._call(REVIEWER, self.reviewer.run_reviewer(prompt, self.context))
            else:
                review = await self._call(REVIEWER, self.reviewer.continue_reviewer(follow_up))
            self._last_review = review
            self._send(ReviewerOutputReceived(current, review))
            if self.host is not None:
                await self.host.publish_review(self.context, review, current)

            # 2. Approval ends the rally; blocking issues are advisory
            if review.action == ReviewAction.APPROVE:
                self.session.approve()
                if review.blocking_issues:
                    self._log(f"Approved with {len(review.blocking_issues)} open blocking issue(s)")
                return self._finish(OutcomeKind.APPROVED)

            # 3. Reviewee turn
            self.session.request_fix()
            if self.host is not None:
                self.context = await self.host.refresh_context(self.context)
            prompt = reviewee_prompt(self.context, review, current, self.prompt_dir)
            if current == 1:
                fix = await self._call(REVIEWEE, self.reviewee.run_reviewee(prompt, self.context))
            else:
                fix = await self._call(REVIEWEE, self.reviewee.continue_reviewee(prompt))

            # 4-7. Settle clarification/permission detours until completed
            fix = await self._settle(current, fix)
            if self.host is not None:
                await self.host.publish_fix(self.context, fix, current)

            self.session.finish_round()
            if self.session.state == "exhausted":
                return self._finish(
                    OutcomeKind.EXHAUSTED,
                    message=f"No approval after {self.session.max_rounds} rounds",
                )

            if self.host is not None:
                # Inline comments of the next review must anchor to the pushed head
                self.context = await self.host.refresh_context(self.context)
                diff = await self.host.refresh_diff(self.context)
                self.context = dataclasses.replace(self.context, diff=diff)
            follow_up = rereview_prompt(
                self.context, self.session.round, fix, self.context.diff, self.prompt_dir
            )

    async def _settle(self, current: int, fix: RevieweeOutput) -> RevieweeOutput:
        """Loop over reviewee outputs until one is completed. Rounds do not advance here."""
        while True:
            self._send(RevieweeOutputReceived(current, fix))

            if fix.status == RevieweeStatus.COMPLETED:
                return fix

            if fix.status == RevieweeStatus.ERROR:
                raise RevieweeReportedError(fix.error_details or "Unknown error")

            if fix.status == RevieweeStatus.NEEDS_CLARIFICATION:
                self.session.need_clarification()
                request_id = self._next_request_id(CLARIFICATION)
                answer = await self._await_decision(
                    request_id, CLARIFICATION, ClarificationRequested(request_id, fix.question)
                )
                self._send(ClarificationAnswered(request_id, answer))
                if answer is None:
                    message = clarification_skipped_prompt(fix.question, self.prompt_dir)
                else:
                    message = answer

            else:  # NEEDS_PERMISSION
                self.session.need_permission()
                request = fix.permission_request
                request_id = self._next_request_id(PERMISSION)
                granted = await self._await_decision(
                    request_id, PERMISSION, PermissionRequested(request_id, request)
                )
                if granted:
                    self.session.grant_tool(request.action)
                    self.reviewee.grant_reviewee_tool(request.action)
                    self._send(PermissionGranted(request_id, request.action))
                    message = permission_granted_prompt(request, self.prompt_dir)
                else:
                    self._send(PermissionDenied(request_id, request.action))
                    message = permission_denied_prompt(request, self.prompt_dir)

            self.session.resume_fix()
            fix = await self._call(REVIEWEE, self.reviewee.continue_reviewee(message))

    async def _call(self, role: str, call: Awaitable[T]) -> T:
        """Await an agent call under the per-call timeout."""
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_secs)
        except TimeoutError:
            raise AgentFailure(f"{role.capitalize()} timeout after {self.timeout_secs:g} seconds") from None

    async def _stop_agents(self) -> None:
        for adapter in {id(a): a for a in (self.reviewer, self.reviewee)}.values():
            try:
                await adapter.stop()
            except Exception as e:
                logger.warning(f"[RALLY] Failed to stop {adapter.identify()}: {e}")

    # ------------------------------------------------------------------
    # Decisions from the consumer
    # ------------------------------------------------------------------

    def grant_permission(self, request_id: str) -> None:
        self._decide(request_id, PERMISSION, True)

    def deny_permission(self, request_id: str) -> None:
        self._decide(request_id, PERMISSION, False)

    def answer_clarification(self, request_id: str, answer: str) -> None:
        self._decide(request_id, CLARIFICATION, answer)

    def skip_clarification(self, request_id: str) -> None:
        self._decide(request_id, CLARIFICATION, None)

    def _decide(self, request_id: str, kind: str, value) -> None:
        pending = self._pending.get(request_id)
        if pending is None or pending.future.done():
            raise UnknownRequest(request_id)
        if pending.kind != kind:
            raise ValueError(f"{request_id} is a {pending.kind} request, not a {kind} request")
        pending.future.set_result(value)

    def _next_request_id(self, kind: str) -> str:
        self._request_counts[kind] += 1
        return f"{_REQUEST_PREFIX[kind]}-{self._request_counts[kind]:03d}"

    async def _await_decision(self, request_id: str, kind: str, event: RallyEvent):
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = _PendingDecision(kind, future)
        self._send(event)
        try:
            return await future
        finally:
            self._pending.pop(request_id, None)

    # ------------------------------------------------------------------
    # Events and outcome
    # ------------------------------------------------------------------

    def _send(self, event: RallyEvent) -> None:
        self.events.send(event)

    def _log(self, message: str) -> None:
        logger.info(f"[RALLY] {message}")
        self._send(Log(message))

    def _fail(self, kind: FailureKind, message: str) -> RallyOutcome:
        logger.error(f"[RALLY] {self.session.label} failed ({kind.value}): {message}")
        if not self.session.is_terminal:
            self.session.fail()
        return self._finish(OutcomeKind.FAILED, failure_kind=kind, message=message)

    def _finish(self, kind: OutcomeKind, failure_kind: FailureKind | None = None,
                message: str = "") -> RallyOutcome:
        outcome = RallyOutcome(
            kind=kind,
            round=self.session.round,
            review=self._last_review,
            failure_kind=failure_kind,
            message=message,
        )
        self.session.record_outcome(outcome)
        self._send(_TERMINAL_EVENTS[kind](outcome))
        self.events.close()
        logger.info(f"[RALLY] {self.session.label}: {kind.value} in round {outcome.round}")
        return outcome

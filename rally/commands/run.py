"""
rally run - Run a reviewer/reviewee rally on a pull request.
"""

import asyncio
import logging
import os
import signal

from rally.agents.adapter import create_adapter
from rally.git import working_diff
from rally.lib.config import RallyConfig
from rally.lib.errors import UnknownRequest
from rally.lib.github import GitHubError, fetch_pr_context
from rally.lib.history import format_blocking_issues, format_files, format_review_comments
from rally.lib.transcript import RallyRecorder
from rally.lib.types import Context
from rally.lib.validate import ValidationError
from rally.workflow.events import (
    AgentText,
    AgentThinking,
    AgentToolResult,
    AgentToolUse,
    ClarificationRequested,
    Log,
    PermissionDenied,
    PermissionGranted,
    PermissionRequested,
    RevieweeOutputReceived,
    ReviewerOutputReceived,
    RoundStarted,
)
from rally.workflow.host import GitHubHost
from rally.workflow.orchestrator import Orchestrator, OutcomeKind, RallyOutcome

logger = logging.getLogger(__name__)

EXIT_CODES = {
    OutcomeKind.APPROVED: 0,
    OutcomeKind.EXHAUSTED: 1,
    OutcomeKind.FAILED: 2,
    OutcomeKind.CANCELLED: 130,
}


def build_local_context(repo: str, pr_number: int, working_dir: str, base_branch: str) -> Context:
    """Context for reviewing uncommitted/unpushed work without touching GitHub."""
    return Context(
        repo=repo,
        pr_number=pr_number,
        title="Local changes",
        diff=working_diff(working_dir, base_branch),
        working_dir=working_dir,
        base_branch=base_branch,
        local_mode=True,
    )


def _print_event(event, verbose: bool) -> None:
    if isinstance(event, RoundStarted):
        print()
        print(f"=== Round {event.round} ===")
    elif isinstance(event, ReviewerOutputReceived):
        review = event.output
        print(f"Reviewer: {review.action.label}")
        print(f"  {review.summary}")
        if review.comments:
            print(format_review_comments(sorted(review.comments, key=lambda c: c.severity)))
        if review.blocking_issues:
            print("  Blocking issues:")
            print(format_blocking_issues(review.blocking_issues))
    elif isinstance(event, RevieweeOutputReceived):
        fix = event.output
        print(f"Reviewee: {fix.status.value}")
        print(f"  {fix.summary}")
        if fix.files_modified:
            print(f"  Files modified: {format_files(fix.files_modified)}")
    elif isinstance(event, PermissionGranted):
        print(f"  Permission granted: {event.action}")
    elif isinstance(event, PermissionDenied):
        print(f"  Permission denied: {event.action}")
    elif isinstance(event, Log):
        print(f"  [log] {event.message}")
    elif verbose and isinstance(event, (AgentThinking, AgentText)):
        print(f"  [{event.agent}] {event.text.strip()[:200]}")
    elif verbose and isinstance(event, (AgentToolUse, AgentToolResult)):
        print(f"  [{event.agent}] {event.tool}: {event.summary}")


async def _ask(prompt: str) -> str:
    try:
        return await asyncio.to_thread(input, prompt)
    except EOFError:
        return ""


async def _consume(orchestrator: Orchestrator, recorder: RallyRecorder | None, verbose: bool) -> None:
    """Print events, persist them, and put requests to the operator."""
    async for event in orchestrator.events:
        if recorder is not None:
            recorder.record(event)
        _print_event(event, verbose)

        try:
            if isinstance(event, PermissionRequested):
                print()
                print(f"Reviewee requests permission ({event.request_id}):")
                print(f"  Action: {event.request.action}")
                print(f"  Reason: {event.request.reason}")
                answer = await _ask("Grant? [y/N] ")
                if answer.strip().lower() in ("y", "yes"):
                    orchestrator.grant_permission(event.request_id)
                else:
                    orchestrator.deny_permission(event.request_id)
            elif isinstance(event, ClarificationRequested):
                print()
                print(f"Reviewee asks ({event.request_id}): {event.question}")
                answer = await _ask("Answer (empty to skip): ")
                if answer.strip():
                    orchestrator.answer_clarification(event.request_id, answer.strip())
                else:
                    orchestrator.skip_clarification(event.request_id)
        except UnknownRequest:
            # Rally ended while we were waiting on the operator
            logger.debug(f"Decision for {event.request_id} arrived after the rally ended")


async def _run_rally(orchestrator: Orchestrator, recorder: RallyRecorder | None, verbose: bool) -> RallyOutcome:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.abort)
    except (NotImplementedError, RuntimeError, ValueError):
        pass  # Windows: Ctrl-C raises KeyboardInterrupt instead

    rally = asyncio.create_task(orchestrator.run())
    await _consume(orchestrator, recorder, verbose)
    return await rally


def _print_outcome(outcome: RallyOutcome) -> None:
    print()
    print("=" * 60)
    print(f"Rally {outcome.kind.value} (round {outcome.round})")
    if outcome.failure_kind:
        print(f"  Kind:   {outcome.failure_kind.value}")
    if outcome.message:
        print(f"  Detail: {outcome.message}")
    if outcome.review and outcome.kind == OutcomeKind.APPROVED:
        print(f"  Summary: {outcome.review.summary}")


def cmd_run(args, config: RallyConfig) -> int:
    """Run a rally and map its outcome to an exit code."""
    try:
        config = config.with_overrides(
            reviewer=args.reviewer,
            reviewee=args.reviewee,
            max_rounds=args.max_rounds,
            timeout_secs=args.timeout,
            budget_secs=args.budget,
            prompt_dir=args.prompt_dir,
        )
        reviewer = create_adapter(config.reviewer, config)
        reviewee = create_adapter(config.reviewee, config)
    except (ValueError, ValidationError) as e:
        print(f"ERROR: {e}")
        return 2

    working_dir = os.path.abspath(args.working_dir or os.getcwd())

    if args.local:
        context = build_local_context(args.repo or "local", args.pr or 0, working_dir, args.base)
        if not context.diff.strip():
            print("No local changes to review.")
            return 0
    else:
        if not args.repo or not args.pr:
            print("ERROR: --repo and --pr are required unless --local is given")
            return 2
        try:
            context = fetch_pr_context(args.repo, args.pr, working_dir=working_dir)
        except GitHubError as e:
            print(f"ERROR: {e}")
            return 2

    print(f"Rally: {context.repo}#{context.pr_number} {context.title}")
    print(f"  Reviewer: {reviewer.identify()}  Reviewee: {reviewee.identify()}  Max rounds: {config.max_rounds}")

    orchestrator = Orchestrator(
        context,
        reviewer,
        reviewee,
        max_rounds=config.max_rounds,
        timeout_secs=config.timeout_secs,
        budget_secs=config.budget_secs,
        host=GitHubHost(),
        prompt_dir=config.resolved_prompt_dir(),
    )
    recorder = None if args.no_save else RallyRecorder(context.repo, context.pr_number)

    try:
        outcome = asyncio.run(_run_rally(orchestrator, recorder, args.verbose))
    except KeyboardInterrupt:
        print("\nInterrupted")
        return EXIT_CODES[OutcomeKind.CANCELLED]

    _print_outcome(outcome)
    if recorder is not None:
        print(f"  Session: {recorder.session_dir}")
    return EXIT_CODES[outcome.kind]

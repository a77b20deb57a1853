"""Shared fixtures and fakes for rally tests."""

import asyncio

import pytest

from rally.lib.types import (
    CommentSeverity,
    Context,
    PermissionRequest,
    ReviewAction,
    ReviewComment,
    ReviewerOutput,
    RevieweeOutput,
    RevieweeStatus,
)
from rally.lib.prompts import clear_cache


def make_context(**overrides) -> Context:
    values = dict(
        repo="acme/widgets",
        pr_number=42,
        title="Add widget cache",
        diff="diff --git a/cache.py b/cache.py\n+CACHE = {}\n",
        body="Caches widgets in memory.",
        working_dir="/work/widgets",
        head_sha="abc123",
    )
    values.update(overrides)
    return Context(**values)


def review(action: str = "request_changes", summary: str = "Needs work", comments=(), blocking=()) -> ReviewerOutput:
    return ReviewerOutput(
        action=ReviewAction(action),
        summary=summary,
        comments=tuple(comments),
        blocking_issues=tuple(blocking),
    )


def comment(path="cache.py", line=1, body="Unbounded cache", severity="major") -> ReviewComment:
    return ReviewComment(path=path, line=line, body=body, severity=CommentSeverity(severity))


def fix(status: str = "completed", summary: str = "Fixed it", files=("cache.py",), **details) -> RevieweeOutput:
    return RevieweeOutput(
        status=RevieweeStatus(status),
        summary=summary,
        files_modified=tuple(files),
        **details,
    )


def needs_permission(action="npm install", reason="Need dependencies") -> RevieweeOutput:
    return fix(
        "needs_permission",
        summary="Blocked on a command",
        files=(),
        permission_request=PermissionRequest(action=action, reason=reason),
    )


def needs_clarification(question="Should the cache be bounded?") -> RevieweeOutput:
    return fix("needs_clarification", summary="Unsure", files=(), question=question)


async def hang():
    await asyncio.sleep(3600)


class ScriptedAdapter:
    """
    AgentAdapter fake that replays scripted outputs.

    Script entries are returned in order. An exception instance is raised
    instead; a callable is called and its awaitable result returned.
    """

    def __init__(self, name="fake", reviewer=(), reviewee=()):
        self.name = name
        self.reviewer_script = list(reviewer)
        self.reviewee_script = list(reviewee)
        self.calls: list[tuple[str, str]] = []
        self.granted: list[str] = []
        self.sink = None
        self.stopped = False

    def identify(self) -> str:
        return self.name

    def bind_event_sink(self, sink) -> None:
        self.sink = sink

    async def _next(self, script, method, text):
        self.calls.append((method, text))
        if not script:
            raise AssertionError(f"Unexpected call to {method}")
        item = script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return await item()
        return item

    async def run_reviewer(self, prompt, context):
        return await self._next(self.reviewer_script, "run_reviewer", prompt)

    async def run_reviewee(self, prompt, context):
        return await self._next(self.reviewee_script, "run_reviewee", prompt)

    async def continue_reviewer(self, message):
        return await self._next(self.reviewer_script, "continue_reviewer", message)

    async def continue_reviewee(self, message):
        return await self._next(self.reviewee_script, "continue_reviewee", message)

    def grant_reviewee_tool(self, tool):
        self.granted.append(tool)

    async def stop(self):
        self.stopped = True

    def methods(self) -> list[str]:
        return [method for method, _ in self.calls]


class FakeHost:
    """PullRequestHost fake recording what would be published."""

    def __init__(self, diffs=(), head_sha=None):
        self.diffs = list(diffs)
        self.head_sha = head_sha
        self.reviews: list[tuple[int, ReviewerOutput]] = []
        self.fixes: list[tuple[int, RevieweeOutput]] = []
        self.notify = None

    def attach(self, notify):
        self.notify = notify

    async def refresh_diff(self, context):
        return self.diffs.pop(0) if self.diffs else context.diff

    async def refresh_context(self, context):
        if self.head_sha:
            from dataclasses import replace
            return replace(context, head_sha=self.head_sha)
        return context

    async def publish_review(self, context, review, round):
        self.reviews.append((round, review))
        self.notify(f"posted review for round {round}")

    async def publish_fix(self, context, fix, round):
        self.fixes.append((round, fix))


def drive(orchestrator, respond=None):
    """
    Run a rally to completion while consuming its events.

    respond(orchestrator, event) is called for every event, and may make
    decisions or abort. Returns (outcome, events).
    """
    async def main():
        task = asyncio.create_task(orchestrator.run())
        events = []
        async for event in orchestrator.events:
            events.append(event)
            if respond is not None:
                respond(orchestrator, event)
        return await task, events

    return asyncio.run(main())


@pytest.fixture(autouse=True)
def fresh_prompt_cache():
    clear_cache()
    yield
    clear_cache()

"""Pull request host used by the orchestrator during a rally.

The host publishes each turn to the PR and refreshes what the agents see
between turns. Nothing here can end a rally: failures are logged and
reported through the notify callback, and the rally carries on with what
it already has. In local mode nothing leaves the machine.
"""

import asyncio
import dataclasses
import logging
from typing import Callable, Protocol

from rally.git import branch_diff, working_diff
from rally.lib import github
from rally.lib.history import REVIEWER_COMMENT_PREFIX, format_fix_comment, format_review_body
from rally.lib.types import Context, ReviewAction, ReviewerOutput, RevieweeOutput

logger = logging.getLogger(__name__)

# Pause between inline comment posts (GitHub secondary rate limits)
INLINE_COMMENT_DELAY = 0.1


class PullRequestHost(Protocol):
    def attach(self, notify: Callable[[str], None]) -> None: ...

    async def refresh_diff(self, context: Context) -> str: ...

    async def refresh_context(self, context: Context) -> Context: ...

    async def publish_review(self, context: Context, review: ReviewerOutput, round: int) -> None: ...

    async def publish_fix(self, context: Context, fix: RevieweeOutput, round: int) -> None: ...


class GitHubHost:
    """PullRequestHost backed by the gh and git CLIs."""

    def __init__(self):
        self._notify: Callable[[str], None] = lambda message: None

    def attach(self, notify: Callable[[str], None]) -> None:
        self._notify = notify

    async def refresh_diff(self, context: Context) -> str:
        """
        Diff for the next re-review, preferring local git so the reviewer
        sees commits the reviewee has not pushed.
        """
        if context.local_mode:
            return await asyncio.to_thread(working_diff, context.working_dir or ".", context.base_branch)

        if context.working_dir:
            diff = await asyncio.to_thread(branch_diff, context.working_dir, context.base_branch)
            if diff is not None:
                self._notify("Using local git diff for re-review")
                return diff
            self._notify("Local git diff empty or failed, falling back to GitHub API")

        diff = await asyncio.to_thread(github.fetch_pr_diff, context.repo, context.pr_number)
        if diff is None:
            self._notify("Could not refresh the diff; re-reviewing the previous one")
            return context.diff
        return diff

    async def refresh_context(self, context: Context) -> Context:
        """Latest head SHA and bot comments. The input Context is not modified."""
        if context.local_mode:
            return context

        head_sha = await asyncio.to_thread(github.fetch_head_sha, context.repo, context.pr_number)
        comments = await asyncio.to_thread(github.fetch_bot_comments, context.repo, context.pr_number)
        if comments:
            self._notify(f"Fetched {len(comments)} external bot comments")
        return dataclasses.replace(
            context,
            head_sha=head_sha or context.head_sha,
            external_comments=tuple(comments),
        )

    async def publish_review(self, context: Context, review: ReviewerOutput, round: int) -> None:
        """Post the review summary, then one inline comment per reviewer comment."""
        if context.local_mode:
            self._notify("Local mode: skipping review posting to PR")
            return

        body = format_review_body(review, round)
        result = await asyncio.to_thread(github.submit_review, context.repo, context.pr_number, review.action, body)
        if not result.success and review.action == ReviewAction.APPROVE:
            # GitHub refuses self-approval; keep the summary as a comment
            logger.warning(f"[GH] Approve failed, falling back to comment: {result.stderr.strip()}")
            result = await asyncio.to_thread(
                github.submit_review, context.repo, context.pr_number, ReviewAction.COMMENT, body
            )
        if not result.success:
            logger.warning(f"[GH] Failed to post review: {result.stderr.strip()}")
            self._notify(f"Failed to post review to PR: {result.stderr.strip()}")
            return

        if not context.head_sha:
            if review.comments:
                self._notify("No head SHA known; skipping inline comments")
            return

        for i, comment in enumerate(review.comments):
            if i:
                await asyncio.sleep(INLINE_COMMENT_DELAY)
            result = await asyncio.to_thread(
                github.create_review_comment,
                context.repo,
                context.pr_number,
                context.head_sha,
                comment.path,
                comment.line,
                f"{REVIEWER_COMMENT_PREFIX}\n\n{comment.body}",
            )
            if not result.success:
                logger.warning(
                    f"[GH] Failed to post inline comment on {comment.path}:{comment.line}: "
                    f"{result.stderr.strip()}"
                )

    async def publish_fix(self, context: Context, fix: RevieweeOutput, round: int) -> None:
        if context.local_mode:
            self._notify("Local mode: skipping fix comment posting")
            return

        body = format_fix_comment(fix, round)
        result = await asyncio.to_thread(
            github.submit_review, context.repo, context.pr_number, ReviewAction.COMMENT, body
        )
        if not result.success:
            logger.warning(f"[GH] Failed to post fix comment: {result.stderr.strip()}")
            self._notify(f"Failed to post fix comment to PR: {result.stderr.strip()}")

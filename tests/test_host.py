"""Tests for rally.workflow.host module."""

import asyncio
from unittest.mock import patch

import pytest

from conftest import comment, fix, make_context, review
from rally.lib.github import GhResult
from rally.lib.types import ExternalComment, ReviewAction
from rally.workflow.host import GitHubHost

OK = GhResult(0, "", "")
FAIL = GhResult(1, "", "denied")


@pytest.fixture
def host():
    host = GitHubHost()
    host.messages = []
    host.attach(host.messages.append)
    return host


@pytest.fixture(autouse=True)
def no_comment_delay():
    with patch("rally.workflow.host.INLINE_COMMENT_DELAY", 0):
        yield


class TestPublishReview:
    """Posting reviewer turns."""

    @patch("rally.lib.github.create_review_comment", return_value=OK)
    @patch("rally.lib.github.submit_review", return_value=OK)
    def test_review_and_inline_comments(self, submit, inline, host):
        r = review(comments=[comment(), comment(path="b.py", line=5, body="Nit")])
        asyncio.run(host.publish_review(make_context(), r, 1))

        repo, pr, action, body = submit.call_args[0]
        assert (repo, pr, action) == ("acme/widgets", 42, ReviewAction.REQUEST_CHANGES)
        assert "Round 1: RequestChanges" in body
        assert inline.call_count == 2
        assert inline.call_args_list[1][0][:5] == ("acme/widgets", 42, "abc123", "b.py", 5)
        assert inline.call_args_list[1][0][5].endswith("\n\nNit")

    @patch("rally.lib.github.submit_review", side_effect=[FAIL, OK])
    def test_approve_falls_back_to_comment(self, submit, host):
        asyncio.run(host.publish_review(make_context(), review("approve"), 1))
        assert [c[0][2] for c in submit.call_args_list] == [ReviewAction.APPROVE, ReviewAction.COMMENT]

    @patch("rally.lib.github.create_review_comment")
    @patch("rally.lib.github.submit_review", return_value=FAIL)
    def test_failed_review_reported(self, submit, inline, host):
        asyncio.run(host.publish_review(make_context(), review(comments=[comment()]), 1))
        assert inline.call_count == 0
        assert any("Failed to post review" in m for m in host.messages)

    @patch("rally.lib.github.create_review_comment")
    @patch("rally.lib.github.submit_review", return_value=OK)
    def test_no_head_sha_skips_inline(self, submit, inline, host):
        asyncio.run(host.publish_review(make_context(head_sha=""), review(comments=[comment()]), 1))
        assert inline.call_count == 0
        assert any("head SHA" in m for m in host.messages)

    @patch("rally.lib.github.submit_review")
    def test_local_mode_posts_nothing(self, submit, host):
        asyncio.run(host.publish_review(make_context(local_mode=True), review(), 1))
        asyncio.run(host.publish_fix(make_context(local_mode=True), fix(), 1))
        assert submit.call_count == 0
        assert len(host.messages) == 2


class TestPublishFix:
    @patch("rally.lib.github.submit_review", return_value=OK)
    def test_fix_comment(self, submit, host):
        asyncio.run(host.publish_fix(make_context(), fix(), 3))
        assert submit.call_args[0][2] == ReviewAction.COMMENT
        assert "Round 3" in submit.call_args[0][3]


class TestRefresh:
    """Refreshing diff and context between turns."""

    @patch("rally.workflow.host.branch_diff", return_value="+local\n")
    def test_diff_prefers_local_git(self, branch_diff, host):
        diff = asyncio.run(host.refresh_diff(make_context()))
        assert diff == "+local\n"
        branch_diff.assert_called_once_with("/work/widgets", "main")

    @patch("rally.lib.github.fetch_pr_diff", return_value="+remote\n")
    @patch("rally.workflow.host.branch_diff", return_value=None)
    def test_diff_falls_back_to_github(self, branch_diff, fetch_pr_diff, host):
        assert asyncio.run(host.refresh_diff(make_context())) == "+remote\n"

    @patch("rally.lib.github.fetch_pr_diff", return_value=None)
    def test_diff_keeps_previous_on_failure(self, fetch_pr_diff, host):
        context = make_context(working_dir=None)
        assert asyncio.run(host.refresh_diff(context)) == context.diff

    @patch("rally.workflow.host.working_diff", return_value="+wip\n")
    def test_local_mode_diff(self, working_diff, host):
        assert asyncio.run(host.refresh_diff(make_context(local_mode=True))) == "+wip\n"

    @patch("rally.lib.github.fetch_bot_comments", return_value=[ExternalComment(source="bot[bot]", body="hi")])
    @patch("rally.lib.github.fetch_head_sha", return_value="fff")
    def test_refresh_context(self, head_sha, bot_comments, host):
        context = make_context()
        updated = asyncio.run(host.refresh_context(context))
        assert updated.head_sha == "fff"
        assert updated.external_comments[0].body == "hi"
        assert context.head_sha == "abc123"

    @patch("rally.lib.github.fetch_bot_comments", return_value=[])
    @patch("rally.lib.github.fetch_head_sha", return_value=None)
    def test_refresh_context_keeps_known_sha(self, head_sha, bot_comments, host):
        assert asyncio.run(host.refresh_context(make_context())).head_sha == "abc123"

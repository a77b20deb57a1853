"""Tests for rally.lib.github module."""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from rally.lib.github import (
    GitHubError,
    create_review_comment,
    fetch_bot_comments,
    fetch_head_sha,
    fetch_pr_context,
    is_bot_user,
    run_gh,
    submit_review,
)
from rally.lib.types import MAX_EXTERNAL_COMMENTS, ReviewAction


def gh_ok(stdout=""):
    return MagicMock(returncode=0, stdout=stdout, stderr="")


def gh_fail(stderr="boom"):
    return MagicMock(returncode=1, stdout="", stderr=stderr)


def ndjson(*items):
    return "\n".join(json.dumps(i) for i in items) + "\n"


class TestRunGh:
    """Tests for run_gh."""

    @patch("rally.lib.github.subprocess.run")
    def test_success(self, mock_run):
        mock_run.return_value = gh_ok("out")
        result = run_gh(["pr", "list"])
        assert result.success
        assert mock_run.call_args[0][0] == ["gh", "pr", "list"]

    @patch("rally.lib.github.subprocess.run")
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="gh", timeout=30)
        result = run_gh(["pr", "list"])
        assert not result.success
        assert "timeout" in result.stderr

    @patch("rally.lib.github.subprocess.run")
    def test_gh_missing(self, mock_run):
        mock_run.side_effect = FileNotFoundError("gh")
        result = run_gh(["pr", "list"])
        assert not result.success
        assert "installed" in result.stderr


class TestBots:
    @pytest.mark.parametrize("login,expected", [
        ("coderabbitai[bot]", True),
        ("github-actions", True),
        ("dependabot", True),
        ("octocat", False),
    ])
    def test_is_bot_user(self, login, expected):
        assert is_bot_user(login) is expected

    @patch("rally.lib.github.subprocess.run")
    def test_fetch_bot_comments(self, mock_run):
        mock_run.side_effect = [
            gh_ok(ndjson(
                {"path": "a.py", "line": 3, "body": "Use LRU", "user": "coderabbitai[bot]"},
                {"path": "a.py", "line": 4, "body": "I agree", "user": "octocat"},
            )),
            gh_ok(ndjson({"body": "CI passed", "user": "github-actions"})),
        ]
        comments = fetch_bot_comments("acme/widgets", 42)
        assert [(c.source, c.path, c.line) for c in comments] == [
            ("coderabbitai[bot]", "a.py", 3),
            ("github-actions", None, None),
        ]
        assert "repos/acme/widgets/pulls/42/comments" in mock_run.call_args_list[0][0][0]

    @patch("rally.lib.github.subprocess.run")
    def test_fetch_bot_comments_capped(self, mock_run):
        many = [{"body": f"n{i}", "user": "bot[bot]"} for i in range(30)]
        mock_run.side_effect = [gh_ok(ndjson(*many)), gh_ok("")]
        assert len(fetch_bot_comments("acme/widgets", 42)) == MAX_EXTERNAL_COMMENTS

    @patch("rally.lib.github.subprocess.run")
    def test_fetch_bot_comments_failure(self, mock_run):
        mock_run.return_value = gh_fail()
        assert fetch_bot_comments("acme/widgets", 42) == []


class TestFetchPrContext:
    """Tests for fetch_pr_context."""

    @patch("rally.lib.github.subprocess.run")
    def test_builds_context(self, mock_run):
        mock_run.side_effect = [
            gh_ok(json.dumps({"title": "Add cache", "body": "", "headRefOid": "abc", "baseRefName": "develop"})),
            gh_ok("diff --git a/x b/x\n"),
            gh_ok(""),
            gh_ok(ndjson({"body": "Looks risky", "user": "copilot[bot]"})),
        ]
        context = fetch_pr_context("acme/widgets", 42, working_dir="/work")
        assert context.title == "Add cache"
        assert context.body is None
        assert context.head_sha == "abc"
        assert context.base_branch == "develop"
        assert context.diff == "diff --git a/x b/x\n"
        assert context.working_dir == "/work"
        assert context.external_comments[0].source == "copilot[bot]"
        assert not context.local_mode

    @patch("rally.lib.github.subprocess.run")
    def test_view_failure(self, mock_run):
        mock_run.return_value = gh_fail("Could not resolve to a PullRequest")
        with pytest.raises(GitHubError):
            fetch_pr_context("acme/widgets", 999)

    @patch("rally.lib.github.subprocess.run")
    def test_diff_failure(self, mock_run):
        mock_run.side_effect = [gh_ok(json.dumps({"title": "t"})), gh_fail()]
        with pytest.raises(GitHubError):
            fetch_pr_context("acme/widgets", 42)

    @patch("rally.lib.github.subprocess.run")
    def test_head_sha(self, mock_run):
        mock_run.return_value = gh_ok('{"headRefOid": "def"}')
        assert fetch_head_sha("acme/widgets", 42) == "def"

    @patch("rally.lib.github.subprocess.run")
    def test_head_sha_bad_json(self, mock_run):
        mock_run.return_value = gh_ok("oops")
        assert fetch_head_sha("acme/widgets", 42) is None


class TestPosting:
    """Reviews and inline comments."""

    @patch("rally.lib.github.subprocess.run")
    def test_submit_review(self, mock_run):
        mock_run.return_value = gh_ok()
        submit_review("acme/widgets", 42, ReviewAction.REQUEST_CHANGES, "Fix it")
        assert mock_run.call_args[0][0] == [
            "gh", "pr", "review", "42", "--request-changes", "-b", "Fix it", "-R", "acme/widgets",
        ]

    @patch("rally.lib.github.subprocess.run")
    def test_create_review_comment(self, mock_run):
        mock_run.return_value = gh_ok()
        create_review_comment("acme/widgets", 42, "abc", "a.py", 7, "Bound this")
        cmd = mock_run.call_args[0][0]
        assert cmd[:5] == ["gh", "api", "--method", "POST", "repos/acme/widgets/pulls/42/comments"]
        assert "line=7" in cmd
        assert "commit_id=abc" in cmd
        assert "side=RIGHT" in cmd

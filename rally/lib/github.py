"""
GitHub integration helpers for rallies.

Provides utilities for interacting with GitHub via the gh CLI: building the
rally Context for a PR, fetching bot feedback, and posting reviews and
comments back to the PR.
"""

import json
import logging
import subprocess
from dataclasses import dataclass

from rally.lib.types import MAX_EXTERNAL_COMMENTS, Context, ExternalComment, ReviewAction

logger = logging.getLogger(__name__)


# Timeout for GitHub CLI operations (seconds)
GH_TIMEOUT_SECONDS = 30

# Logins treated as review bots besides anything ending in [bot]
BOT_SUFFIXES = ("[bot]",)
BOT_EXACT_MATCHES = {"github-actions", "dependabot"}

_REVIEW_FLAGS = {
    ReviewAction.APPROVE: "--approve",
    ReviewAction.REQUEST_CHANGES: "--request-changes",
    ReviewAction.COMMENT: "--comment",
}


class GitHubError(Exception):
    """A gh call needed to start a rally failed."""


@dataclass
class GhResult:
    """Result of a gh command."""
    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0


def run_gh(args: list[str], timeout: int = GH_TIMEOUT_SECONDS) -> GhResult:
    """Run gh with a timeout. Never raises; failures come back as a non-zero result."""
    try:
        result = subprocess.run(
            ["gh"] + args,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return GhResult(result.returncode, result.stdout, result.stderr)
    except subprocess.TimeoutExpired:
        return GhResult(-1, "", "GitHub API timeout")
    except OSError as e:
        return GhResult(-1, "", f"Failed to execute gh CLI - is it installed? ({e})")


def is_bot_user(login: str) -> bool:
    return login.endswith(BOT_SUFFIXES) or login in BOT_EXACT_MATCHES


def fetch_pr_diff(repo: str, pr_number: int) -> str | None:
    result = run_gh(["pr", "diff", str(pr_number), "-R", repo])
    if not result.success:
        logger.warning(f"[GH] Failed to fetch diff for {repo}#{pr_number}: {result.stderr.strip()}")
        return None
    return result.stdout


def fetch_head_sha(repo: str, pr_number: int) -> str | None:
    result = run_gh(["pr", "view", str(pr_number), "-R", repo, "--json", "headRefOid"])
    if not result.success:
        logger.warning(f"[GH] Failed to fetch head SHA for {repo}#{pr_number}: {result.stderr.strip()}")
        return None
    try:
        return json.loads(result.stdout).get("headRefOid") or None
    except json.JSONDecodeError:
        logger.warning(f"[GH] Invalid JSON from gh pr view for {repo}#{pr_number}")
        return None


def fetch_pr_context(repo: str, pr_number: int, working_dir: str | None = None) -> Context:
    """
    Build the rally Context for a PR.

    Raises:
        GitHubError: If PR metadata or the diff cannot be fetched
    """
    result = run_gh([
        "pr", "view", str(pr_number), "-R", repo,
        "--json", "title,body,headRefOid,baseRefName",
    ])
    if not result.success:
        raise GitHubError(f"Could not load {repo}#{pr_number}: {result.stderr.strip()}")
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError:
        raise GitHubError(f"Invalid JSON from gh pr view for {repo}#{pr_number}") from None

    diff = fetch_pr_diff(repo, pr_number)
    if diff is None:
        raise GitHubError(f"Could not fetch diff for {repo}#{pr_number}")

    return Context(
        repo=repo,
        pr_number=pr_number,
        title=data.get("title", ""),
        body=data.get("body") or None,
        diff=diff,
        working_dir=working_dir,
        head_sha=data.get("headRefOid", ""),
        base_branch=data.get("baseRefName") or "main",
        external_comments=tuple(fetch_bot_comments(repo, pr_number)),
    )


def _api_lines(endpoint: str, jq: str) -> list[dict]:
    """Run a paginated gh api GET, one JSON object per output line."""
    result = run_gh(["api", "--paginate", endpoint, "--jq", jq])
    if not result.success:
        logger.warning(f"[GH] Failed to fetch {endpoint}: {result.stderr.strip()}")
        return []
    items = []
    for line in result.stdout.splitlines():
        if not line.strip():
            continue
        try:
            items.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return items


def fetch_bot_comments(repo: str, pr_number: int) -> list[ExternalComment]:
    """Inline and discussion comments left by bots, at most MAX_EXTERNAL_COMMENTS."""
    comments = []

    for c in _api_lines(
        f"repos/{repo}/pulls/{pr_number}/comments",
        ".[] | {path, line, body, user: .user.login}",
    ):
        if is_bot_user(c.get("user") or ""):
            comments.append(ExternalComment(
                source=c["user"],
                body=c.get("body") or "",
                path=c.get("path"),
                line=c.get("line"),
            ))

    for c in _api_lines(
        f"repos/{repo}/issues/{pr_number}/comments",
        ".[] | {body, user: .user.login}",
    ):
        if is_bot_user(c.get("user") or ""):
            comments.append(ExternalComment(source=c["user"], body=c.get("body") or ""))

    return comments[:MAX_EXTERNAL_COMMENTS]


def submit_review(repo: str, pr_number: int, action: ReviewAction, body: str) -> GhResult:
    """Submit a PR review (approve, request changes, or comment)."""
    return run_gh([
        "pr", "review", str(pr_number), _REVIEW_FLAGS[action],
        "-b", body, "-R", repo,
    ])


def create_review_comment(repo: str, pr_number: int, commit_id: str, path: str,
                          line: int, body: str) -> GhResult:
    """Inline comment on the new side of a file at commit_id."""
    return run_gh([
        "api", "--method", "POST", f"repos/{repo}/pulls/{pr_number}/comments",
        "-f", f"body={body}",
        "-f", f"commit_id={commit_id}",
        "-f", f"path={path}",
        "-F", f"line={line}",
        "-f", "side=RIGHT",
    ])

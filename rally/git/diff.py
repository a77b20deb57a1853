"""Git diff operations for re-review."""

import logging
from pathlib import Path

from rally.git.runner import run_git

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = 60


def get_diff(worktree: Path | str, ref_range: str) -> str | None:
    """Diff text for a ref or range, or None if git failed."""
    result = run_git(["diff", ref_range], worktree)
    if not result.success:
        logger.debug(f"[GIT] diff {ref_range} failed: {result.stderr.strip()}")
        return None
    return result.stdout


def working_diff(worktree: Path | str, base_branch: str) -> str:
    """
    Latest local changes, for rallies that never touch the remote.

    Uncommitted changes (git diff HEAD) win; otherwise the committed changes
    against origin/<base>. Returns "" rather than an outdated diff when both
    are empty.
    """
    for ref_range in ("HEAD", f"origin/{base_branch}...HEAD"):
        diff = get_diff(worktree, ref_range)
        if diff and diff.strip():
            return diff
    return ""


def branch_diff(worktree: Path | str, base_branch: str) -> str | None:
    """
    Diff of HEAD against the merge base with origin/<base>, matching what
    GitHub shows for the PR. Fetches the base first; a failed fetch only
    means the ref may be stale. Returns None when the diff is empty or git
    failed, so the caller can fall back to the host.
    """
    fetched = run_git(["fetch", "origin", base_branch], worktree, timeout=FETCH_TIMEOUT)
    if not fetched.success:
        logger.warning(f"[GIT] fetch origin {base_branch} failed, continuing with potentially stale ref")

    diff = get_diff(worktree, f"origin/{base_branch}...HEAD")
    if diff and diff.strip():
        return diff
    return None

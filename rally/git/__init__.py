"""Git operations used during a rally.

- run_git returns a GitResult; check .success before using its output.
- Diff helpers return str | None, None meaning git failed or found nothing.
"""

from rally.git.runner import GitResult, run_git
from rally.git.diff import branch_diff, get_diff, working_diff

__all__ = [
    "GitResult",
    "run_git",
    "branch_diff",
    "get_diff",
    "working_diff",
]

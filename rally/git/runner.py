"""Runs git for the rally's diff refreshes."""

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30

# A fetch that wants credentials must fail fast instead of waiting on a tty
_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}


@dataclass
class GitResult:
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def run_git(args: list[str], cwd: Path | str, timeout: int = DEFAULT_TIMEOUT) -> GitResult:
    """
    Run `git -C <cwd> <args>`. Never raises: timeouts and a missing git
    binary come back as a failed GitResult.
    """
    cmd = ["git", "-C", str(cwd)] + args
    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env={**os.environ, **_GIT_ENV},
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"[GIT] {' '.join(args[:2])} timed out after {timeout}s in {cwd}")
        return GitResult(-1, "", f"git {args[0]} timed out after {timeout}s", timed_out=True)
    except OSError as e:
        return GitResult(-1, "", f"Failed to run git: {e}")

    result = GitResult(proc.returncode, proc.stdout, proc.stderr)
    if not result.success:
        logger.debug(f"[GIT] {' '.join(args[:2])} exited {proc.returncode}: {proc.stderr.strip()}")
    return result

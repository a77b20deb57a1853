"""
Async runner for agent CLIs that stream newline-delimited JSON.

Each stdout line is decoded and handed to a callback as it arrives, so
adapters can mirror agent activity while the turn is still running.
A cancelled or stopped run terminates the child process, then kills it if
it has not exited within KILL_GRACE_SECONDS.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from rally.lib.errors import AgentFailure

logger = logging.getLogger(__name__)

KILL_GRACE_SECONDS = 5

# Progress summaries are trimmed to this many characters
SUMMARY_MAX_CHARS = 60

# asyncio's default 64KiB line limit is too small for tool results
STREAM_LIMIT = 16 * 1024 * 1024


@dataclass
class StreamResult:
    returncode: int
    stderr: str
    lines: int = 0
    skipped: list[str] = field(default_factory=list)  # stdout lines that were not JSON


class ProcessGroup:
    """
    Agent child processes started by one adapter.

    Usage:
        group = ProcessGroup("claude")
        result = await group.run(["claude", "-p"], prompt, cwd, on_event)
        ...
        await group.stop()  # from anywhere, ends whatever is still running
    """

    def __init__(self, agent: str):
        self.agent = agent
        self._procs: set[asyncio.subprocess.Process] = set()

    @property
    def running(self) -> int:
        return len(self._procs)

    async def run(
        self,
        cmd: list[str],
        stdin_text: str,
        cwd: str | Path | None,
        on_event: Callable[[dict], None],
    ) -> StreamResult:
        """
        Run a command, feed it stdin, and stream its JSON lines.

        Args:
            cmd: Command to run
            stdin_text: Text written to stdin before it is closed
            cwd: Working directory (None = inherit)
            on_event: Called with every decoded JSON object on stdout

        Returns:
            StreamResult; callers decide what a non-zero exit means

        Raises:
            AgentFailure: If the command cannot be started
        """
        logger.debug(f"[{self.agent.upper()}] Spawning: {' '.join(cmd[:3])} ...")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise AgentFailure(f"Failed to spawn {self.agent} process: {e}") from e

        self._procs.add(proc)
        result = StreamResult(returncode=0, stderr="")
        stderr_lines: list[str] = []

        async def read_stdout() -> None:
            while True:
                line_bytes = await proc.stdout.readline()
                if not line_bytes:
                    break
                line = line_bytes.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    result.skipped.append(line)
                    continue
                if isinstance(event, dict):
                    result.lines += 1
                    on_event(event)

        async def read_stderr() -> None:
            while True:
                line_bytes = await proc.stderr.readline()
                if not line_bytes:
                    break
                stderr_lines.append(line_bytes.decode("utf-8", errors="replace").rstrip("\n\r"))

        try:
            if proc.stdin:
                proc.stdin.write(stdin_text.encode("utf-8"))
                await proc.stdin.drain()
                proc.stdin.close()
                await proc.stdin.wait_closed()
            await asyncio.gather(read_stdout(), read_stderr())
            await proc.wait()
        except asyncio.CancelledError:
            await _terminate(proc)
            raise
        except (BrokenPipeError, ConnectionResetError) as e:
            await _terminate(proc)
            raise AgentFailure(f"{self.agent} process closed its input early: {e}") from e
        finally:
            self._procs.discard(proc)

        result.returncode = proc.returncode or 0
        result.stderr = "\n".join(stderr_lines)
        return result

    async def stop(self) -> None:
        """Terminate every process still running."""
        procs = list(self._procs)
        if procs:
            logger.info(f"[{self.agent.upper()}] Stopping {len(procs)} running process(es)")
        await asyncio.gather(*(_terminate(p) for p in procs))


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """Graceful shutdown: try terminate first, then kill."""
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
        await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
    except ProcessLookupError:
        pass


def as_object(value: Any) -> dict:
    """value if it is a JSON object, else an empty dict."""
    return value if isinstance(value, dict) else {}


def summarize_text(text: str, max_chars: int = SUMMARY_MAX_CHARS) -> str:
    """Trim text to max_chars, ending in "..." when cut."""
    text = text.strip()
    if len(text) <= max_chars:
        return text
    if max_chars <= 3:
        return text[:max_chars]
    return text[:max_chars - 3] + "..."


def summarize_json(value: Any) -> str:
    """One-line summary of a tool input or output for progress events."""
    if isinstance(value, str):
        return summarize_text(value)
    if isinstance(value, dict):
        keys = list(value)[:3]
        if not keys:
            return "{}"
        suffix = ", ..." if len(value) > 3 else ""
        return summarize_text("{" + ", ".join(keys) + suffix + "}")
    if isinstance(value, list):
        return f"[{len(value)} items]"
    return summarize_text(json.dumps(value))

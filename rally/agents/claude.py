"""
Claude Code adapter.

Runs `claude -p` in stream-json mode with the output schema enforced by
--json-schema. The prompt goes in on stdin to avoid CLI argument length
limits. Follow-up turns resume the same session with --resume.
"""

import json
import logging
from typing import Any

from rally.agents.adapter import REVIEWEE, REVIEWER, AdapterState
from rally.agents.stream import ProcessGroup, as_object, summarize_json, summarize_text
from rally.lib.errors import AgentFailure
from rally.lib.protocol import parse_reviewee_output, parse_reviewer_output
from rally.lib.types import Context, ReviewerOutput, RevieweeOutput
from rally.lib.validate import schema_text
from rally.workflow.events import AgentText, AgentThinking, AgentToolResult, AgentToolUse

logger = logging.getLogger(__name__)

AGENT_NAME = "claude"

# Read-only: files, PR metadata, and GET-only API calls
REVIEWER_TOOLS = [
    "Read", "Glob", "Grep",
    "Bash(gh pr view:*)", "Bash(gh pr diff:*)", "Bash(gh pr checks:*)",
    "Bash(gh api --method GET:*)", "Bash(gh api -X GET:*)",
]

# Edits plus non-destructive git/gh and build/test commands.
# git checkout/restore, publishing and gh pr close/merge/edit are left out.
REVIEWEE_TOOLS = [
    "Read", "Edit", "Write", "Glob", "Grep",
    "Bash(git status:*)", "Bash(git diff:*)", "Bash(git add:*)", "Bash(git commit:*)",
    "Bash(git log:*)", "Bash(git show:*)", "Bash(git branch:*)", "Bash(git switch:*)",
    "Bash(git stash:*)", "Bash(git push:*)",
    "Bash(gh pr view:*)", "Bash(gh pr diff:*)", "Bash(gh pr checks:*)",
    "Bash(gh api --method GET:*)", "Bash(gh api -X GET:*)",
    "Bash(cargo build:*)", "Bash(cargo test:*)", "Bash(cargo check:*)",
    "Bash(cargo clippy:*)", "Bash(cargo fmt:*)", "Bash(cargo run:*)",
    "Bash(npm install:*)", "Bash(npm test:*)", "Bash(npm run:*)", "Bash(npm ci:*)",
    "Bash(pnpm install:*)", "Bash(pnpm test:*)", "Bash(pnpm run:*)",
    "Bash(bun install:*)", "Bash(bun test:*)", "Bash(bun run:*)",
]


def extract_json(text: str) -> Any:
    """
    Decode a JSON result that may be wrapped in prose or a ``` fence.

    Returns the original text if nothing decodes, so the caller's
    validator reports it as malformed.
    """
    inner = text.strip()

    # Look for ```json or ``` code block anywhere in the response
    if "```" in inner:
        start_match = inner.find("```json")
        if start_match == -1:
            start_match = inner.find("```")
        if start_match != -1:
            newline_after_open = inner.find("\n", start_match)
            if newline_after_open != -1:
                close_match = inner.find("\n```", newline_after_open)
                if close_match != -1:
                    inner = inner[newline_after_open + 1:close_match].strip()

    try:
        return json.loads(inner)
    except json.JSONDecodeError:
        return text


class ClaudeAdapter:
    """AgentAdapter backed by the Claude Code CLI."""

    def __init__(self, reviewer_tools: list[str] | None = None, reviewee_tools: list[str] | None = None):
        self._state = AdapterState(AGENT_NAME)
        self._procs = ProcessGroup(AGENT_NAME)
        self.reviewer_tools = _dedupe(REVIEWER_TOOLS + (reviewer_tools or []))
        self._base_reviewee_tools = _dedupe(REVIEWEE_TOOLS + (reviewee_tools or []))
        self.granted_tools: list[str] = []

    def identify(self) -> str:
        return AGENT_NAME

    def bind_event_sink(self, sink) -> None:
        self._state.bind(sink)

    @property
    def reviewee_tools(self) -> list[str]:
        return _dedupe(self._base_reviewee_tools + self.granted_tools)

    def grant_reviewee_tool(self, tool: str) -> None:
        if tool in self.granted_tools:
            return
        self.granted_tools.append(tool)
        logger.info(f"[CLAUDE] Reviewee granted tool: {tool}")

    async def run_reviewer(self, prompt: str, context: Context) -> ReviewerOutput:
        self._state.require_sink()
        self._state.start_session(REVIEWER, context)
        result = await self._run(REVIEWER, prompt, context, session_id=None)
        return parse_reviewer_output(result, AGENT_NAME)

    async def run_reviewee(self, prompt: str, context: Context) -> RevieweeOutput:
        self._state.require_sink()
        self._state.start_session(REVIEWEE, context)
        result = await self._run(REVIEWEE, prompt, context, session_id=None)
        return parse_reviewee_output(result, AGENT_NAME)

    async def continue_reviewer(self, message: str) -> ReviewerOutput:
        self._state.require_sink()
        session_id, context = self._state.require_session(REVIEWER)
        result = await self._run(REVIEWER, message, context, session_id=session_id)
        return parse_reviewer_output(result, AGENT_NAME)

    async def continue_reviewee(self, message: str) -> RevieweeOutput:
        self._state.require_sink()
        session_id, context = self._state.require_session(REVIEWEE)
        result = await self._run(REVIEWEE, message, context, session_id=session_id)
        return parse_reviewee_output(result, AGENT_NAME)

    async def stop(self) -> None:
        await self._procs.stop()

    def build_command(self, role: str, session_id: str | None) -> list[str]:
        tools = self.reviewer_tools if role == REVIEWER else self.reviewee_tools
        cmd = [
            "claude", "-p",
            "--output-format", "stream-json",
            "--verbose",
            "--json-schema", schema_text(role),
            "--allowedTools", ",".join(tools),
        ]
        if session_id:
            cmd += ["--resume", session_id]
        return cmd

    async def _run(self, role: str, prompt: str, context: Context, session_id: str | None) -> Any:
        turn = _ClaudeTurn(self._state)
        cmd = self.build_command(role, session_id)
        logger.info(f"[CLAUDE] {role} turn ({'resume ' + session_id if session_id else 'new session'})")

        result = await self._procs.run(cmd, prompt, context.working_dir, turn.handle)

        if result.returncode != 0:
            raise AgentFailure(f"Claude process failed with status {result.returncode}: {result.stderr.strip()}")
        if turn.error:
            raise AgentFailure(f"Claude reported an error: {turn.error}")

        self._state.record_session(role, turn.session_id)
        if self._state.session_id(role) is None:
            logger.warning(f"[CLAUDE] No session id in {role} output; follow-ups will fail")
        return turn.result


class _ClaudeTurn:
    """Folds one turn's stream-json events into a result and session id."""

    def __init__(self, state: AdapterState):
        self._state = state
        self._tool_names: dict[str, str] = {}
        self.session_id: str | None = None
        self.result: Any = None
        self.error: str | None = None

    def handle(self, event: dict) -> None:
        if event.get("session_id"):
            self.session_id = event["session_id"]

        event_type = event.get("type")
        if event_type == "assistant":
            self._handle_content(as_object(event.get("message")))
        elif event_type == "user":
            self._handle_tool_results(as_object(event.get("message")))
        elif event_type == "content_block_start":
            block = as_object(event.get("content_block"))
            if block.get("type") == "tool_use" and block.get("name"):
                self._emit(AgentToolUse(AGENT_NAME, block["name"], "starting..."))
            elif block.get("type") == "thinking":
                self._emit(AgentThinking(AGENT_NAME, "Thinking..."))
        elif event_type == "content_block_delta":
            delta = as_object(event.get("delta"))
            if delta.get("type") == "thinking_delta" and delta.get("thinking"):
                self._emit(AgentThinking(AGENT_NAME, delta["thinking"]))
            elif delta.get("type") == "text_delta" and delta.get("text"):
                self._emit(AgentText(AGENT_NAME, delta["text"]))
        elif event_type == "tool_use" and event.get("tool_name"):
            self._emit(AgentToolUse(AGENT_NAME, event["tool_name"], summarize_json(event.get("tool_input", ""))))
        elif event_type == "tool_result" and event.get("tool_name"):
            output = event.get("tool_result")
            summary = summarize_text(output) if isinstance(output, str) else "completed"
            self._emit(AgentToolResult(AGENT_NAME, event["tool_name"], summary))
        elif event_type == "result":
            self._handle_result(event)

    def _handle_content(self, message: dict) -> None:
        content = message.get("content")
        if not isinstance(content, list):
            return
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "thinking" and block.get("thinking"):
                self._emit(AgentThinking(AGENT_NAME, block["thinking"]))
            elif block_type == "text" and block.get("text"):
                self._emit(AgentText(AGENT_NAME, block["text"]))
            elif block_type == "tool_use":
                name = block.get("name", "tool")
                if block.get("id"):
                    self._tool_names[block["id"]] = name
                self._emit(AgentToolUse(AGENT_NAME, name, summarize_json(block.get("input", {}))))

    def _handle_tool_results(self, message: dict) -> None:
        if not isinstance(message.get("content"), list):
            return
        for block in message["content"]:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            name = self._tool_names.get(block.get("tool_use_id"), "tool")
            content = block.get("content")
            if isinstance(content, str):
                summary = summarize_text(content)
            elif block.get("is_error"):
                summary = "error"
            else:
                summary = "completed"
            self._emit(AgentToolResult(AGENT_NAME, name, summary))

    def _handle_result(self, event: dict) -> None:
        if event.get("is_error"):
            self.error = str(event.get("result") or event.get("subtype") or "unknown error")
            return
        # --json-schema puts the object in structured_output
        value = event.get("structured_output")
        if value is None:
            value = event.get("result")
        if isinstance(value, str):
            value = extract_json(value)
        if value is not None:
            self.result = value
        logger.debug(f"[CLAUDE] Turn finished in {event.get('duration_ms', '?')}ms")

    def _emit(self, event) -> None:
        self._state.emit(event)


def _dedupe(tools: list[str]) -> list[str]:
    return list(dict.fromkeys(tools))

"""
Codex adapter.

Runs `codex exec --json` with the prompt on stdin and the output schema in a
temporary file for --output-schema. The reviewer runs in Codex's default
read-only sandbox; the reviewee runs with --full-auto so it can edit the
working tree. Follow-ups use `codex exec resume <thread_id> -`.
"""

import copy
import json
import logging
import tempfile
from pathlib import Path
from typing import Any

from rally.agents.adapter import REVIEWEE, REVIEWER, AdapterState
from rally.agents.stream import ProcessGroup, as_object, summarize_json
from rally.lib.errors import AgentFailure
from rally.lib.protocol import parse_reviewee_output, parse_reviewer_output
from rally.lib.types import Context, ReviewerOutput, RevieweeOutput
from rally.lib.validate import load_schema
from rally.workflow.events import AgentText, AgentThinking, AgentToolResult, AgentToolUse

logger = logging.getLogger(__name__)

AGENT_NAME = "codex"


def strict_schema(schema: dict) -> dict:
    """
    Codex structured output wants every object closed and every property
    listed as required. Optional fields stay optional by being nullable.
    """
    schema = copy.deepcopy(schema)

    def close(node: Any) -> None:
        if isinstance(node, dict):
            node.pop("description", None)
            if "properties" in node:
                node["additionalProperties"] = False
                node["required"] = list(node["properties"])
            for value in node.values():
                close(value)
        elif isinstance(node, list):
            for value in node:
                close(value)

    close(schema)
    return schema


class CodexAdapter:
    """AgentAdapter backed by the Codex CLI.

    Codex has sandbox modes rather than per-tool allow-lists, so granted
    tools are recorded but do not change the command line.
    """

    def __init__(self):
        self._state = AdapterState(AGENT_NAME)
        self._procs = ProcessGroup(AGENT_NAME)
        self.granted_tools: list[str] = []

    def identify(self) -> str:
        return AGENT_NAME

    def bind_event_sink(self, sink) -> None:
        self._state.bind(sink)

    def grant_reviewee_tool(self, tool: str) -> None:
        if tool not in self.granted_tools:
            self.granted_tools.append(tool)
            logger.debug(f"[CODEX] Recorded grant for {tool} (no per-tool permissions in codex)")

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

    def build_command(self, role: str, schema_path: Path, working_dir: str | None,
                      session_id: str | None) -> list[str]:
        # "-" reads the prompt from stdin (large diffs exceed ARG_MAX)
        if session_id:
            cmd = ["codex", "exec", "resume", session_id, "-"]
        else:
            cmd = ["codex", "exec", "-"]
        cmd += ["--json", "--output-schema", str(schema_path)]
        if working_dir:
            cmd += ["--cd", working_dir]
        if role == REVIEWEE:
            cmd.append("--full-auto")
        return cmd

    async def _run(self, role: str, prompt: str, context: Context, session_id: str | None) -> Any:
        turn = _CodexTurn(self._state, session_id)
        logger.info(f"[CODEX] {role} turn ({'resume ' + session_id if session_id else 'new thread'})")

        with tempfile.TemporaryDirectory(prefix="rally-codex-") as tmp:
            schema_path = Path(tmp) / f"{role}.schema.json"
            schema_path.write_text(json.dumps(strict_schema(load_schema(role))))
            cmd = self.build_command(role, schema_path, context.working_dir, session_id)
            result = await self._procs.run(cmd, prompt, None, turn.handle)

        if result.returncode != 0:
            stderr = result.stderr.strip()
            if "auth" in stderr or "unauthorized" in stderr:
                raise AgentFailure("Codex authentication failed. Run 'codex auth' to authenticate")
            raise AgentFailure(f"Codex process failed with status {result.returncode}: {stderr}")
        if turn.error:
            raise AgentFailure(f"Codex turn failed: {turn.error}")
        if turn.result is not None and turn.thread_id is None:
            raise AgentFailure("Codex did not report a thread id; the session cannot be resumed")

        self._state.record_session(role, turn.thread_id)
        return turn.result


class _CodexTurn:
    """Folds one turn's --json events into a result and thread id."""

    def __init__(self, state: AdapterState, thread_id: str | None):
        self._state = state
        # A resumed turn may not announce its thread again
        self.thread_id = thread_id
        self.result: Any = None
        self.error: str | None = None

    def handle(self, event: dict) -> None:
        event_type = event.get("type")
        if event_type == "thread.started":
            self.thread_id = event.get("thread_id") or self.thread_id
            self._state.emit(AgentThinking(AGENT_NAME, "Starting..."))
        elif event_type == "turn.started":
            self._state.emit(AgentThinking(AGENT_NAME, "Processing..."))
        elif event_type == "turn.failed":
            error = event.get("error")
            if isinstance(error, dict):
                error = error.get("message")
            self.error = str(error or "Unknown error")
        elif event_type == "error":
            self.error = str(event.get("message") or "Unknown error")
        elif event_type in ("item.started", "item.updated", "item.completed"):
            self._handle_item(as_object(event.get("item")), completed=event_type == "item.completed")
        elif event_type == "turn.completed":
            logger.debug(f"[CODEX] Turn completed: {event.get('usage')}")

    def _handle_item(self, item: dict, completed: bool) -> None:
        item_type = item.get("type", "")
        text = item.get("text")

        if item_type == "reasoning":
            if text:
                self._state.emit(AgentThinking(AGENT_NAME, text))
        elif item_type == "agent_message":
            if not isinstance(text, str) or not text:
                return
            if not completed:
                self._state.emit(AgentThinking(AGENT_NAME, text))
                return
            try:
                self.result = json.loads(text)
            except json.JSONDecodeError:
                self._state.emit(AgentText(AGENT_NAME, text))
                return
            self._state.emit(AgentText(AGENT_NAME, "Turn completed."))
        elif item_type in ("function_call", "command", "command_execution"):
            tool = summarize_json(item.get("name") or item.get("command") or "tool")
            if completed:
                output = item.get("output") or item.get("aggregated_output") or "completed"
                self._state.emit(AgentToolResult(AGENT_NAME, tool, summarize_json(output)))
            else:
                self._state.emit(AgentToolUse(AGENT_NAME, tool, "running..."))
        elif item_type in ("file_edit", "file_change"):
            path = summarize_json(item.get("path") or "file")
            if completed:
                self._state.emit(AgentToolResult(AGENT_NAME, "edit", path))
            else:
                self._state.emit(AgentToolUse(AGENT_NAME, "edit", path))

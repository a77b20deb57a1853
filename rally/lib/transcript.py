"""Rally transcript persistence.

An event consumer that keeps a record of a rally on disk: session.json with
the current state, plus one history file per reviewer and reviewee turn.

Layout:
    $XDG_CACHE_HOME/rally/<owner>_<repo>_<pr>/
        session.json
        history/001_review.json
        history/001_fix.json
        ...
"""

import json
import logging
import os
import shutil
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path

from rally.workflow.events import (
    ClarificationRequested,
    PermissionGranted,
    PermissionRequested,
    RallyEvent,
    RevieweeOutputReceived,
    ReviewerOutputReceived,
    RoundStarted,
)

logger = logging.getLogger(__name__)


def cache_home() -> Path:
    return Path(os.environ.get("XDG_CACHE_HOME") or Path.home() / ".cache") / "rally"


def session_dir_for(repo: str, pr_number: int, base_dir: Path | None = None) -> Path:
    return (base_dir or cache_home()) / f"{repo.replace('/', '_')}_{pr_number}"


def write_json_atomic(path: Path, data: dict) -> None:
    """Write JSON via a temp file + rename so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2))
    os.replace(tmp, path)


@dataclass
class HistoryEntry:
    """One persisted turn."""
    round: int
    kind: str  # "review" or "fix"
    data: dict
    timestamp: str = ""


@dataclass
class SessionRecord:
    repo: str
    pr_number: int
    round: int = 0
    state: str = "idle"
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    updated_at: str = ""
    message: str = ""
    granted_tools: list[str] = field(default_factory=list)


class RallyRecorder:
    """
    Persists a rally as its events arrive.

    Usage:
        recorder = RallyRecorder("owner/repo", 42)
        async for event in orchestrator.events:
            recorder.record(event)
    """

    def __init__(self, repo: str, pr_number: int, base_dir: Path | None = None):
        self.session_dir = session_dir_for(repo, pr_number, base_dir)
        self.history_dir = self.session_dir / "history"
        self.session = SessionRecord(repo=repo, pr_number=pr_number)

    @property
    def session_path(self) -> Path:
        return self.session_dir / "session.json"

    def record(self, event: RallyEvent) -> None:
        if event.informational:
            return

        if isinstance(event, RoundStarted):
            self.session.round = event.round
            self.session.state = "reviewer_turn"
        elif isinstance(event, ReviewerOutputReceived):
            self._write_history(event.round, "review", event.output.to_dict())
            self.session.state = "reviewer_done"
        elif isinstance(event, RevieweeOutputReceived):
            self._write_history(event.round, "fix", event.output.to_dict())
            self.session.state = "reviewee_turn"
        elif isinstance(event, ClarificationRequested):
            self.session.state = "awaiting_clarification"
        elif isinstance(event, PermissionRequested):
            self.session.state = "awaiting_permission"
        elif isinstance(event, PermissionGranted):
            if event.action not in self.session.granted_tools:
                self.session.granted_tools.append(event.action)
        elif event.terminal:
            outcome = event.outcome
            self.session.state = outcome.kind.value
            self.session.message = outcome.message

        self.save()

    def save(self) -> None:
        self.session.updated_at = datetime.now().isoformat()
        write_json_atomic(self.session_path, asdict(self.session))

    def _write_history(self, round: int, kind: str, data: dict) -> None:
        entry = {"round": round, "kind": kind, "timestamp": datetime.now().isoformat(), "data": data}
        write_json_atomic(self.history_dir / f"{round:03d}_{kind}.json", entry)

    def read_history(self) -> list[HistoryEntry]:
        """Persisted turns, oldest first (review before fix within a round)."""
        return read_history(self.session_dir)

    def cleanup(self) -> None:
        if self.session_dir.exists():
            shutil.rmtree(self.session_dir)


def load_session(session_dir: Path) -> SessionRecord | None:
    path = session_dir / "session.json"
    if not path.exists():
        return None
    try:
        return SessionRecord(**json.loads(path.read_text()))
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Could not read {path}: {e}")
        return None


def read_history(session_dir: Path) -> list[HistoryEntry]:
    history_dir = session_dir / "history"
    if not history_dir.is_dir():
        return []

    entries = []
    for path in history_dir.glob("*.json"):
        try:
            raw = json.loads(path.read_text())
            entries.append(HistoryEntry(
                round=raw["round"],
                kind=raw["kind"],
                data=raw["data"],
                timestamp=raw.get("timestamp", ""),
            ))
        except (json.JSONDecodeError, KeyError) as e:
            logger.warning(f"Skipping unreadable history file {path}: {e}")

    kind_order = {"review": 0, "fix": 1}
    entries.sort(key=lambda e: (e.round, kind_order.get(e.kind, 2)))
    return entries

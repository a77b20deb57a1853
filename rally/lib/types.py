"""
Shared data types for rallies.

Everything the reviewer and reviewee exchange with the orchestrator is
modelled here so the adapters, the protocol validator and the workflow
can share them without circular imports.
"""

from dataclasses import dataclass
from enum import Enum

# Bot comments fed back to the reviewee are capped to keep prompts bounded
MAX_EXTERNAL_COMMENTS = 20


@dataclass(frozen=True)
class ExternalComment:
    """Prior feedback left on the PR by a bot (Copilot, CodeRabbit, CI, ...)."""
    source: str  # Bot login
    body: str
    path: str | None = None
    line: int | None = None


@dataclass(frozen=True)
class Context:
    """Everything a rally needs to know about the pull request.

    Immutable for the lifetime of a rally. Per-round refreshes (head SHA,
    bot comments) build a new Context with dataclasses.replace().
    """
    repo: str  # "owner/name"
    pr_number: int
    title: str
    diff: str
    body: str | None = None
    working_dir: str | None = None
    head_sha: str = ""
    base_branch: str = "main"
    external_comments: tuple[ExternalComment, ...] = ()
    local_mode: bool = False


class ReviewAction(Enum):
    APPROVE = "approve"
    REQUEST_CHANGES = "request_changes"
    COMMENT = "comment"

    @property
    def label(self) -> str:
        """CamelCase name used in prompts and PR comments."""
        return "".join(part.capitalize() for part in self.value.split("_"))


class CommentSeverity(Enum):
    """Severity of a reviewer comment, most important first."""
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    SUGGESTION = "suggestion"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, CommentSeverity):
            return NotImplemented
        return self.rank < other.rank

    @classmethod
    def parse(cls, value) -> "CommentSeverity":
        """Map a raw severity to the enum. Unknown values become MINOR."""
        for member in cls:
            if member.value == value:
                return member
        return cls.MINOR


_SEVERITY_ORDER = list(CommentSeverity)


class RevieweeStatus(Enum):
    COMPLETED = "completed"
    NEEDS_CLARIFICATION = "needs_clarification"
    NEEDS_PERMISSION = "needs_permission"
    ERROR = "error"


@dataclass(frozen=True)
class ReviewComment:
    path: str
    line: int
    body: str
    severity: CommentSeverity = CommentSeverity.MINOR

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "line": self.line,
            "body": self.body,
            "severity": self.severity.value,
        }


@dataclass(frozen=True)
class ReviewerOutput:
    """One reviewer turn's verdict."""
    action: ReviewAction
    summary: str
    comments: tuple[ReviewComment, ...] = ()
    blocking_issues: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "summary": self.summary,
            "comments": [c.to_dict() for c in self.comments],
            "blocking_issues": list(self.blocking_issues),
        }


@dataclass(frozen=True)
class PermissionRequest:
    action: str  # What the reviewee wants to do, e.g. "run npm install"
    reason: str

    def to_dict(self) -> dict:
        return {"action": self.action, "reason": self.reason}


@dataclass(frozen=True)
class RevieweeOutput:
    """One reviewee turn's report.

    At most one of question / permission_request / error_details is set,
    and which one follows from status.
    """
    status: RevieweeStatus
    summary: str
    files_modified: tuple[str, ...] = ()
    question: str | None = None
    permission_request: PermissionRequest | None = None
    error_details: str | None = None

    def to_dict(self) -> dict:
        data = {
            "status": self.status.value,
            "summary": self.summary,
            "files_modified": list(self.files_modified),
        }
        if self.question is not None:
            data["question"] = self.question
        if self.permission_request is not None:
            data["permission_request"] = self.permission_request.to_dict()
        if self.error_details is not None:
            data["error_details"] = self.error_details
        return data


"""
Formatting of rally history for prompts and PR comments.

Turns reviewer output, bot comments and reviewee results into the markdown
fragments the prompt templates and PR comments are built from.
"""

from typing import Iterable

from rally.lib.types import ExternalComment, ReviewComment, ReviewerOutput, RevieweeOutput

__all__ = [
    "truncate",
    "format_review_comments",
    "format_blocking_issues",
    "format_external_comments",
    "format_files",
    "format_changes_summary",
    "format_review_body",
    "format_fix_comment",
    "REVIEWER_COMMENT_PREFIX",
    "REVIEWEE_COMMENT_PREFIX",
]

REVIEWER_COMMENT_PREFIX = "[AI Rally - Reviewer]"
REVIEWEE_COMMENT_PREFIX = "[AI Rally - Reviewee]"

# Bot comments are cut to this length inside prompts
EXTERNAL_COMMENT_MAX_CHARS = 200


def truncate(text: str, max_chars: int) -> str:
    """Trim whitespace and cut to max_chars, ending in "..." when cut."""
    text = text.strip()
    if len(text) <= max_chars:
        return text
    if max_chars <= 3:
        return text[:max_chars]
    return text[:max_chars - 3] + "..."


def format_review_comments(comments: Iterable[ReviewComment]) -> str:
    """One line per comment: - [Major] src/app.py:42: body"""
    return "\n".join(
        f"- [{c.severity.value.capitalize()}] {c.path}:{c.line}: {c.body}"
        for c in comments
    )


def format_blocking_issues(issues: Iterable[str]) -> str:
    issues = list(issues)
    if not issues:
        return "None"
    return "\n".join(f"- {issue}" for issue in issues)


def _location(comment: ExternalComment) -> str:
    if comment.path is None:
        return "general"
    if comment.line is None:
        return comment.path
    return f"{comment.path}:{comment.line}"


def format_external_comments(comments: Iterable[ExternalComment]) -> str:
    """
    Section listing feedback from review bots, or "" when there is none.
    """
    lines = [
        f"- [{c.source}] {_location(c)}: {truncate(c.body, EXTERNAL_COMMENT_MAX_CHARS)}"
        for c in comments
    ]
    if not lines:
        return ""
    text = "\n".join(lines)
    return (
        "\n## External Tool Feedback\n\n"
        "The following comments are from external code review tools (Copilot, CodeRabbit, etc.):\n\n"
        f"{text}\n\n"
        "Note: Address these comments if they are relevant and valid. "
        "Don't wait for more feedback from these tools.\n"
    )


def format_files(files: Iterable[str]) -> str:
    files = list(files)
    return ", ".join(files) if files else "No files modified"


def format_changes_summary(output: RevieweeOutput) -> str:
    """What the reviewer is told about the reviewee's last turn."""
    return f"{output.summary}\n\nFiles modified: {format_files(output.files_modified)}"


def format_review_body(review: ReviewerOutput, round: int) -> str:
    """PR review body posted after a reviewer turn."""
    parts = [f"{REVIEWER_COMMENT_PREFIX} Round {round}: {review.action.label}", "", review.summary]
    if review.blocking_issues:
        parts += ["", "**Blocking issues:**", format_blocking_issues(review.blocking_issues)]
    return "\n".join(parts)


def format_fix_comment(output: RevieweeOutput, round: int) -> str:
    """PR comment posted after a completed reviewee turn."""
    files = "\n".join(f"- `{f}`" for f in output.files_modified) or "No files modified"
    return (
        f"{REVIEWEE_COMMENT_PREFIX} Round {round}\n\n"
        f"{output.summary}\n\n"
        f"**Files modified:**\n{files}"
    )

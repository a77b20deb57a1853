"""Tests for rally.lib.history formatting."""

from conftest import comment, fix, review
from rally.lib.history import (
    EXTERNAL_COMMENT_MAX_CHARS,
    REVIEWEE_COMMENT_PREFIX,
    REVIEWER_COMMENT_PREFIX,
    format_blocking_issues,
    format_changes_summary,
    format_external_comments,
    format_files,
    format_fix_comment,
    format_review_body,
    format_review_comments,
    truncate,
)
from rally.lib.types import ExternalComment


class TestTruncate:
    def test_short(self):
        assert truncate("  hi  ", 10) == "hi"

    def test_long(self):
        assert truncate("abcdefghij", 6) == "abc..."

    def test_tiny_limit(self):
        assert truncate("abcdef", 2) == "ab"


class TestFormatting:
    """Prompt fragments."""

    def test_review_comments(self):
        text = format_review_comments([comment(), comment(path="b.py", line=9, body="Nit", severity="suggestion")])
        assert text == "- [Major] cache.py:1: Unbounded cache\n- [Suggestion] b.py:9: Nit"

    def test_blocking_issues(self):
        assert format_blocking_issues([]) == "None"
        assert format_blocking_issues(["a", "b"]) == "- a\n- b"

    def test_external_comments_empty(self):
        assert format_external_comments([]) == ""

    def test_external_comment_locations(self):
        text = format_external_comments([
            ExternalComment(source="bot", body="general note"),
            ExternalComment(source="bot", body="file note", path="a.py"),
            ExternalComment(source="bot", body="x" * 500, path="a.py", line=3),
        ])
        assert "- [bot] general: general note" in text
        assert "- [bot] a.py: file note" in text
        line = next(l for l in text.splitlines() if l.startswith("- [bot] a.py:3:"))
        assert len(line) == len("- [bot] a.py:3: ") + EXTERNAL_COMMENT_MAX_CHARS

    def test_files(self):
        assert format_files([]) == "No files modified"
        assert format_files(["a.py", "b.py"]) == "a.py, b.py"

    def test_changes_summary(self):
        assert format_changes_summary(fix(files=())) == "Fixed it\n\nFiles modified: No files modified"


class TestPullRequestBodies:
    """Text posted back to the PR."""

    def test_review_body(self):
        body = format_review_body(review(blocking=["No eviction"]), 2)
        assert body.startswith(f"{REVIEWER_COMMENT_PREFIX} Round 2: RequestChanges")
        assert "Needs work" in body
        assert "- No eviction" in body

    def test_review_body_without_blocking(self):
        assert "Blocking" not in format_review_body(review("approve"), 1)

    def test_fix_comment(self):
        body = format_fix_comment(fix(files=("a.py", "b.py")), 1)
        assert body.startswith(f"{REVIEWEE_COMMENT_PREFIX} Round 1")
        assert "- `a.py`\n- `b.py`" in body

"""Tests for rally.lib.protocol module."""

import pytest

from rally.lib.errors import FailureKind, MalformedShape, MissingResult, UnknownAction, UnknownStatus
from rally.lib.protocol import parse_reviewee_output, parse_reviewer_output
from rally.lib.types import (
    CommentSeverity,
    PermissionRequest,
    ReviewAction,
    ReviewComment,
    ReviewerOutput,
    RevieweeOutput,
    RevieweeStatus,
)


def reviewer_payload(**overrides):
    data = {
        "action": "request_changes",
        "summary": "Cache is unbounded",
        "comments": [
            {"path": "cache.py", "line": 3, "body": "Bound this", "severity": "major"},
        ],
        "blocking_issues": ["Unbounded memory growth"],
    }
    data.update(overrides)
    return data


def reviewee_payload(**overrides):
    data = {"status": "completed", "summary": "Bounded the cache", "files_modified": ["cache.py"]}
    data.update(overrides)
    return data


class TestParseReviewerOutput:
    """Reviewer results."""

    def test_valid(self):
        output = parse_reviewer_output(reviewer_payload(), "claude")
        assert output.action == ReviewAction.REQUEST_CHANGES
        assert output.summary == "Cache is unbounded"
        assert output.comments[0].path == "cache.py"
        assert output.comments[0].line == 3
        assert output.comments[0].severity == CommentSeverity.MAJOR
        assert output.blocking_issues == ("Unbounded memory growth",)

    def test_empty_comments(self):
        output = parse_reviewer_output(reviewer_payload(action="approve", comments=[], blocking_issues=[]), "codex")
        assert output.action == ReviewAction.APPROVE
        assert output.comments == ()

    def test_missing_result(self):
        with pytest.raises(MissingResult) as exc:
            parse_reviewer_output(None, "claude")
        assert str(exc.value) == "No result in claude response"
        assert exc.value.kind == FailureKind.MISSING_RESULT

    def test_not_an_object(self):
        with pytest.raises(MalformedShape):
            parse_reviewer_output("Looks good to me!", "claude")

    def test_missing_field(self):
        data = reviewer_payload()
        del data["summary"]
        with pytest.raises(MalformedShape) as exc:
            parse_reviewer_output(data, "claude")
        assert "summary" in str(exc.value)
        assert str(exc.value).startswith("Failed to parse reviewer output from claude")

    def test_wrong_type(self):
        with pytest.raises(MalformedShape):
            parse_reviewer_output(reviewer_payload(comments="none"), "claude")

    def test_negative_line(self):
        comments = [{"path": "a.py", "line": -1, "body": "x", "severity": "minor"}]
        with pytest.raises(MalformedShape):
            parse_reviewer_output(reviewer_payload(comments=comments), "claude")

    def test_unknown_action(self):
        with pytest.raises(UnknownAction) as exc:
            parse_reviewer_output(reviewer_payload(action="merge"), "claude")
        assert str(exc.value) == "Unknown review action: merge"

    def test_unknown_severity_becomes_minor(self):
        comments = [{"path": "a.py", "line": 1, "body": "x", "severity": "blocker"}]
        output = parse_reviewer_output(reviewer_payload(comments=comments), "claude")
        assert output.comments[0].severity == CommentSeverity.MINOR

    def test_extra_keys_tolerated(self):
        output = parse_reviewer_output(reviewer_payload(confidence=0.9), "claude")
        assert output.action == ReviewAction.REQUEST_CHANGES


class TestParseRevieweeOutput:
    """Reviewee results."""

    def test_completed(self):
        output = parse_reviewee_output(reviewee_payload(), "codex")
        assert output.status == RevieweeStatus.COMPLETED
        assert output.files_modified == ("cache.py",)
        assert output.question is None

    def test_needs_clarification(self):
        output = parse_reviewee_output(
            reviewee_payload(status="needs_clarification", files_modified=[], question="Which limit?"),
            "codex",
        )
        assert output.question == "Which limit?"

    def test_needs_clarification_without_question(self):
        with pytest.raises(MalformedShape):
            parse_reviewee_output(reviewee_payload(status="needs_clarification", question=None), "codex")

    @pytest.mark.parametrize("question", ["", "   \n"])
    def test_needs_clarification_with_blank_question(self, question):
        with pytest.raises(MalformedShape) as exc:
            parse_reviewee_output(reviewee_payload(status="needs_clarification", question=question), "codex")
        assert exc.value.kind == FailureKind.MALFORMED_SHAPE

    def test_needs_permission(self):
        output = parse_reviewee_output(
            reviewee_payload(
                status="needs_permission",
                permission_request={"action": "npm install", "reason": "Missing deps"},
            ),
            "claude",
        )
        assert output.permission_request.action == "npm install"
        assert output.permission_request.reason == "Missing deps"

    def test_needs_permission_without_request(self):
        with pytest.raises(MalformedShape):
            parse_reviewee_output(reviewee_payload(status="needs_permission"), "claude")

    def test_permission_request_missing_reason(self):
        with pytest.raises(MalformedShape):
            parse_reviewee_output(
                reviewee_payload(status="needs_permission", permission_request={"action": "npm install"}),
                "claude",
            )

    def test_error(self):
        output = parse_reviewee_output(reviewee_payload(status="error", error_details="disk full"), "claude")
        assert output.status == RevieweeStatus.ERROR
        assert output.error_details == "disk full"

    def test_details_not_matching_status_are_dropped(self):
        output = parse_reviewee_output(
            reviewee_payload(question="Unrelated?", error_details="nothing"),
            "claude",
        )
        assert output.question is None
        assert output.error_details is None

    def test_unknown_status(self):
        with pytest.raises(UnknownStatus) as exc:
            parse_reviewee_output(reviewee_payload(status="done"), "claude")
        assert str(exc.value) == "Unknown reviewee status: done"

    def test_missing_files_modified(self):
        data = reviewee_payload()
        del data["files_modified"]
        with pytest.raises(MalformedShape):
            parse_reviewee_output(data, "claude")

    def test_missing_result(self):
        with pytest.raises(MissingResult):
            parse_reviewee_output(None, "codex")


class TestRoundTrip:
    """Typed outputs survive to_dict() and back through the parsers."""

    def test_reviewer_with_every_severity(self):
        output = ReviewerOutput(
            action=ReviewAction.REQUEST_CHANGES,
            summary="Several problems",
            comments=tuple(
                ReviewComment(path="cache.py", line=i + 1, body=f"{severity.value} issue", severity=severity)
                for i, severity in enumerate(CommentSeverity)
            ),
            blocking_issues=("Unbounded memory growth",),
        )
        assert parse_reviewer_output(output.to_dict(), "claude") == output

    @pytest.mark.parametrize("action", list(ReviewAction))
    def test_reviewer_every_action(self, action):
        output = ReviewerOutput(action=action, summary="Verdict")
        assert parse_reviewer_output(output.to_dict(), "codex") == output

    @pytest.mark.parametrize("output", [
        RevieweeOutput(RevieweeStatus.COMPLETED, "Bounded the cache", files_modified=("cache.py", "tests/test_cache.py")),
        RevieweeOutput(RevieweeStatus.NEEDS_CLARIFICATION, "Blocked", question="Which limit?"),
        RevieweeOutput(
            RevieweeStatus.NEEDS_PERMISSION,
            "Need dependencies",
            files_modified=("package.json",),
            permission_request=PermissionRequest(action="npm install", reason="Missing deps"),
        ),
        RevieweeOutput(RevieweeStatus.ERROR, "Gave up", error_details="disk full"),
        RevieweeOutput(RevieweeStatus.ERROR, "Gave up"),
    ], ids=lambda o: o.status.value)
    def test_reviewee_every_status(self, output):
        assert parse_reviewee_output(output.to_dict(), "claude") == output

    def test_unknown_severity_does_not_survive(self):
        # Degrading to minor is lossy: the original severity is gone after one trip
        payload = reviewer_payload(comments=[{"path": "a.py", "line": 1, "body": "x", "severity": "blocker"}])
        output = parse_reviewer_output(payload, "claude")

        again = output.to_dict()

        assert again["comments"][0]["severity"] == "minor"
        assert again != payload
        assert parse_reviewer_output(again, "claude") == output

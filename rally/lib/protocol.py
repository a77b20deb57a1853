"""
Protocol validation for agent output.

Turns the loosely-typed JSON an agent produced into ReviewerOutput or
RevieweeOutput. Used the same way for every backend, so the orchestrator
never looks at raw agent payloads.

Rules:
- No payload at all is MissingResult.
- Missing fields or wrong JSON types are MalformedShape.
- action / status outside their closed sets are UnknownAction /
  UnknownStatus: guessing would corrupt control flow.
- An unknown comment severity degrades to minor so the comment survives.
"""

import logging
from typing import Any

from rally.lib.errors import MalformedShape, MissingResult, UnknownAction, UnknownStatus
from rally.lib.types import (
    CommentSeverity,
    PermissionRequest,
    ReviewAction,
    ReviewComment,
    ReviewerOutput,
    RevieweeOutput,
    RevieweeStatus,
)
from rally.lib.validate import schema_errors

logger = logging.getLogger(__name__)

# Closed sets are checked here rather than by the schema. Extra keys are tolerated.
_IGNORED_KEYWORDS = frozenset({"enum", "additionalProperties"})


def _check_shape(result: Any, schema_name: str, agent_name: str) -> dict:
    if result is None:
        raise MissingResult(agent_name)
    if not isinstance(result, dict):
        raise MalformedShape(agent_name, schema_name, f"expected an object, got {type(result).__name__}")
    errors = schema_errors(result, schema_name, ignore=_IGNORED_KEYWORDS)
    if errors:
        raise MalformedShape(agent_name, schema_name, "; ".join(errors))
    return result


def parse_reviewer_output(result: Any, agent_name: str) -> ReviewerOutput:
    """
    Parse a reviewer's terminal result.

    Args:
        result: Decoded JSON from the agent, or None if it produced nothing
        agent_name: Backend label, used only in error messages

    Raises:
        MissingResult, MalformedShape, UnknownAction
    """
    data = _check_shape(result, "reviewer", agent_name)

    try:
        action = ReviewAction(data["action"])
    except ValueError:
        raise UnknownAction(data["action"]) from None

    comments = []
    for raw in data["comments"]:
        severity = CommentSeverity.parse(raw["severity"])
        if severity.value != raw["severity"]:
            logger.debug(f"[PROTOCOL] {agent_name}: unknown severity {raw['severity']!r}, using minor")
        comments.append(ReviewComment(
            path=raw["path"],
            line=raw["line"],
            body=raw["body"],
            severity=severity,
        ))

    return ReviewerOutput(
        action=action,
        summary=data["summary"],
        comments=tuple(comments),
        blocking_issues=tuple(data["blocking_issues"]),
    )


def parse_reviewee_output(result: Any, agent_name: str) -> RevieweeOutput:
    """
    Parse a reviewee's terminal result.

    The detail field matching the status must be present for
    needs_clarification and needs_permission. Detail fields that do not
    belong to the status are dropped.

    Raises:
        MissingResult, MalformedShape, UnknownStatus
    """
    data = _check_shape(result, "reviewee", agent_name)

    try:
        status = RevieweeStatus(data["status"])
    except ValueError:
        raise UnknownStatus(data["status"]) from None

    question = None
    permission_request = None
    error_details = None

    if status == RevieweeStatus.NEEDS_CLARIFICATION:
        question = data.get("question")
        if not question or not question.strip():
            raise MalformedShape(agent_name, "reviewee", "needs_clarification without a question")
    elif status == RevieweeStatus.NEEDS_PERMISSION:
        raw = data.get("permission_request")
        if raw is None:
            raise MalformedShape(agent_name, "reviewee", "needs_permission without a permission_request")
        permission_request = PermissionRequest(action=raw["action"], reason=raw["reason"])
    elif status == RevieweeStatus.ERROR:
        error_details = data.get("error_details")

    return RevieweeOutput(
        status=status,
        summary=data["summary"],
        files_modified=tuple(data["files_modified"]),
        question=question,
        permission_request=permission_request,
        error_details=error_details,
    )

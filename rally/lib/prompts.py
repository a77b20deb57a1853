"""
Prompt loader for rallies.

Loads prompt templates from the packaged prompts/ directory, or from a user
prompt directory that overrides them file by file, and interpolates
variables. Templates use Python str.format() syntax: {variable_name}
Use {{ and }} for literal braces (e.g., JSON examples).

HTML comments (<!-- ... -->) are stripped before rendering - use them for
documentation that shouldn't be sent to the agent.
"""

import logging
import re
from functools import lru_cache
from pathlib import Path

from rally.lib.history import (
    format_blocking_issues,
    format_changes_summary,
    format_external_comments,
    format_review_comments,
)
from rally.lib.types import Context, PermissionRequest, ReviewerOutput, RevieweeOutput

logger = logging.getLogger(__name__)

__all__ = [
    "PromptError", "load_prompt", "render_prompt", "clear_cache", "PROMPTS_DIR",
    "reviewer_prompt", "reviewee_prompt", "rereview_prompt",
    "permission_granted_prompt", "permission_denied_prompt", "clarification_skipped_prompt",
]

# Pattern to strip HTML comments (including multiline)
_HTML_COMMENT_PATTERN = re.compile(r'<!--.*?-->\s*', re.DOTALL)

PROMPTS_DIR = Path(__file__).parent.parent / "prompts"

NO_DESCRIPTION = "(No description provided)"


class PromptError(Exception):
    """Raised when prompt loading or rendering fails."""
    pass


@lru_cache(maxsize=32)
def load_prompt(name: str, prompt_dir: str | None = None) -> str:
    """
    Load a prompt template by name (cached).

    HTML comments are stripped - use them for documentation.

    Args:
        name: Prompt name without extension (e.g., 'reviewer', 'rereview')
        prompt_dir: Directory whose {name}.md, if present, replaces the default

    Returns:
        Prompt template content (HTML comments stripped)

    Raises:
        PromptError: If no template exists for name
    """
    prompt_path = PROMPTS_DIR / f"{name}.md"
    if prompt_dir:
        override = Path(prompt_dir).expanduser() / f"{name}.md"
        if override.exists():
            prompt_path = override
            logger.debug(f"Using custom prompt template: {override}")

    if not prompt_path.exists():
        raise PromptError(
            f"Prompt template '{name}' not found. "
            f"Expected file: {prompt_path}"
        )

    logger.debug(f"Loading prompt template: {name}")
    try:
        content = prompt_path.read_text()
    except OSError as e:
        raise PromptError(f"Could not read prompt template {prompt_path}: {e}") from e

    content = _HTML_COMMENT_PATTERN.sub('', content)

    return content.lstrip()


def render_prompt(name: str, prompt_dir: str | None = None, **kwargs) -> str:
    """
    Load and render a prompt template with variables.

    Raises:
        PromptError: If template not found, a variable is missing, or the
            template has unbalanced braces

    Example:
        render_prompt('permission_granted', action='run npm install')
    """
    template = load_prompt(name, prompt_dir)

    try:
        return template.format(**kwargs)
    except KeyError as e:
        raise PromptError(
            f"Missing required variable {e} in prompt '{name}'. "
            f"Provided: {list(kwargs.keys())}"
        ) from e
    except (ValueError, IndexError) as e:
        raise PromptError(f"Malformed template '{name}': {e}") from e


def clear_cache():
    """Clear the prompt cache (useful for testing or hot-reload)."""
    load_prompt.cache_clear()


def reviewer_prompt(context: Context, round: int, prompt_dir: str | None = None) -> str:
    """First-round reviewer prompt."""
    return render_prompt(
        "reviewer",
        prompt_dir,
        repo=context.repo,
        pr_number=context.pr_number,
        pr_title=context.title,
        pr_body=context.body or NO_DESCRIPTION,
        diff=context.diff,
        iteration=round,
    )


def reviewee_prompt(context: Context, review: ReviewerOutput, round: int,
                    prompt_dir: str | None = None) -> str:
    """Reviewee prompt built from the reviewer's last turn and bot feedback."""
    return render_prompt(
        "reviewee",
        prompt_dir,
        repo=context.repo,
        pr_number=context.pr_number,
        pr_title=context.title,
        iteration=round,
        review_summary=review.summary,
        review_action=review.action.label,
        review_comments=format_review_comments(review.comments) or "None",
        blocking_issues=format_blocking_issues(review.blocking_issues),
        external_comments=format_external_comments(context.external_comments),
    )


def rereview_prompt(context: Context, round: int, fix: RevieweeOutput, updated_diff: str,
                    prompt_dir: str | None = None) -> str:
    """Follow-up for the reviewer session after a completed reviewee turn."""
    return render_prompt(
        "rereview",
        prompt_dir,
        repo=context.repo,
        pr_number=context.pr_number,
        pr_title=context.title,
        iteration=round,
        changes_summary=format_changes_summary(fix),
        updated_diff=updated_diff,
    )


def permission_granted_prompt(request: PermissionRequest, prompt_dir: str | None = None) -> str:
    return render_prompt("permission_granted", prompt_dir, action=request.action)


def permission_denied_prompt(request: PermissionRequest, prompt_dir: str | None = None) -> str:
    return render_prompt("permission_denied", prompt_dir, action=request.action, reason=request.reason)


def clarification_skipped_prompt(question: str, prompt_dir: str | None = None) -> str:
    return render_prompt("clarification_skipped", prompt_dir, question=question)

"""
Rally configuration.

Loads config.yaml and returns RallyConfig. Settings live under an `ai:`
section:

    ai:
      reviewer: claude
      reviewee: codex
      max_rounds: 10
      timeout_secs: 600
      budget_secs: 3600          # optional wall-clock limit for the whole rally
      prompt_dir: ~/.config/rally/prompts
      reviewer_additional_tools: []
      reviewee_additional_tools: ["Bash(make test:*)"]

If no config file exists, returns defaults. The `ai:` section is checked
against schemas/config.schema.json.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from rally.lib.validate import ValidationError, validate

logger = logging.getLogger(__name__)

DEFAULT_AGENT = "claude"
DEFAULT_MAX_ROUNDS = 10
DEFAULT_TIMEOUT_SECS = 600


def config_home() -> Path:
    return Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config") / "rally"


def default_config_path() -> Path:
    return config_home() / "config.yaml"


def default_prompt_dir() -> Path:
    return config_home() / "prompts"


@dataclass
class RallyConfig:
    """Rally settings from config.yaml."""
    reviewer: str = DEFAULT_AGENT
    reviewee: str = DEFAULT_AGENT
    max_rounds: int = DEFAULT_MAX_ROUNDS
    timeout_secs: int = DEFAULT_TIMEOUT_SECS
    budget_secs: Optional[int] = None
    prompt_dir: Optional[str] = None
    reviewer_additional_tools: list[str] = field(default_factory=list)
    reviewee_additional_tools: list[str] = field(default_factory=list)

    def resolved_prompt_dir(self) -> str | None:
        """prompt_dir if set, else the default directory when it exists."""
        if self.prompt_dir:
            return str(Path(self.prompt_dir).expanduser())
        fallback = default_prompt_dir()
        return str(fallback) if fallback.is_dir() else None

    def with_overrides(self, **overrides) -> "RallyConfig":
        """Copy with every non-None override applied (used for CLI flags)."""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update({k: v for k, v in overrides.items() if v is not None})
        result = RallyConfig(**values)
        validate(_as_section(result), "config")
        return result


def _as_section(config: RallyConfig) -> dict:
    return {f.name: getattr(config, f.name) for f in fields(config)}


def load_config(config_path: Optional[Path] = None) -> RallyConfig:
    """Load config.yaml and return RallyConfig.

    Args:
        config_path: File to read; defaults to $XDG_CONFIG_HOME/rally/config.yaml

    Raises:
        ValidationError: If the ai section does not match the schema
    """
    config_path = config_path or default_config_path()
    if not config_path.exists():
        return RallyConfig()

    try:
        data = yaml.safe_load(config_path.read_text())
    except (yaml.YAMLError, OSError) as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return RallyConfig()

    if not isinstance(data, dict) or data.get("ai") is None:
        return RallyConfig()
    section = data["ai"]
    if not isinstance(section, dict):
        raise ValidationError("config", "ai section must be a mapping", "ai")

    validate(section, "config")
    logger.debug(f"Loaded config from {config_path}")
    return RallyConfig(**section)

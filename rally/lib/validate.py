"""
Schema validation for rally data.

Agent output and configuration are checked against the JSON Schemas shipped
in rally/schemas/ before anything else looks at them.
"""

import json
from pathlib import Path
from typing import Any

import jsonschema


class ValidationError(Exception):
    """Schema validation failed."""

    def __init__(self, schema_name: str, message: str, path: str = None):
        self.schema_name = schema_name
        self.path = path
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


# Cache loaded schemas
_schema_cache: dict[str, dict] = {}

SCHEMAS_DIR = Path(__file__).parent.parent / "schemas"


def load_schema(schema_name: str) -> dict:
    """Load schema by name, with caching."""
    if schema_name not in _schema_cache:
        schema_path = SCHEMAS_DIR / f"{schema_name}.schema.json"
        if not schema_path.exists():
            raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
        _schema_cache[schema_name] = json.loads(schema_path.read_text())
    return _schema_cache[schema_name]


def schema_text(schema_name: str) -> str:
    """Compact JSON text of a schema, as handed to agent CLIs."""
    return json.dumps(load_schema(schema_name), separators=(",", ":"))


def _format_path(error: jsonschema.ValidationError) -> str:
    return ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "(root)"


def validate(data: Any, schema_name: str) -> None:
    """
    Validate data against named schema.

    Args:
        data: Value to validate
        schema_name: Schema name (e.g., "reviewer", "config")

    Raises:
        ValidationError: If validation fails
    """
    schema = load_schema(schema_name)

    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as e:
        raise ValidationError(schema_name, e.message, _format_path(e)) from None


def schema_errors(data: Any, schema_name: str, ignore: frozenset[str] = frozenset()) -> list[str]:
    """
    Collect every schema violation instead of stopping at the first.

    Args:
        data: Value to check
        schema_name: Schema name
        ignore: Validator keywords to skip (e.g. {"enum"} when closed sets
            are checked by the caller)

    Returns:
        Human-readable "path: message" strings, ordered by path
    """
    schema = load_schema(schema_name)
    validator = jsonschema.Draft7Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(map(str, e.absolute_path)))
    return [f"{_format_path(e)}: {e.message}" for e in errors if e.validator not in ignore]

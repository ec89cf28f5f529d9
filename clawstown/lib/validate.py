"""
Schema validation for agent output.

Agent CLIs return free-form JSON. Everything they produce is validated
against a JSON Schema before the protocol acts on it, so a confused agent
fails loudly instead of creating malformed work items.
"""

import json
from pathlib import Path

import jsonschema

from clawstown.lib.errors import ClawstownError

SCHEMAS_DIR = Path(__file__).resolve().parent.parent / "schemas"


class ValidationError(ClawstownError):
    """Schema validation failed."""

    def __init__(self, schema_name: str, message: str, path: str | None = None):
        self.schema_name = schema_name
        self.path = path
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


_schema_cache: dict[str, dict] = {}


def _load_schema(schema_name: str) -> dict:
    """Load schema by name, with caching."""
    if schema_name not in _schema_cache:
        schema_path = SCHEMAS_DIR / f"{schema_name}.schema.json"
        if not schema_path.exists():
            raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
        _schema_cache[schema_name] = json.loads(schema_path.read_text())
    return _schema_cache[schema_name]


def validate(data, schema_name: str) -> None:
    """
    Validate data against named schema.

    Raises:
        ValidationError: If validation fails
    """
    schema = _load_schema(schema_name)
    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as e:
        path = ".".join(str(p) for p in e.absolute_path) if e.absolute_path else "(root)"
        raise ValidationError(schema_name, e.message, path) from None


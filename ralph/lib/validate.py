"""
Schema validation for ralph.

Enforces JSON Schema validation at the data boundaries: item front matter,
tracker records and the config file.
"""

import json
from pathlib import Path

import jsonschema

from ralph.lib.errors import MalformedInput


class ValidationError(MalformedInput):
    """Schema validation failed."""

    def __init__(self, schema_name: str, message: str, field: str | None = None,
                 path: Path | None = None):
        self.schema_name = schema_name
        self.field = field
        detail = f"[{schema_name}] {message}" + (f" at {field}" if field else "")
        super().__init__(detail, path)


# Cache loaded schemas
_schema_cache: dict[str, dict] = {}


def _get_schemas_dir() -> Path:
    """Get path to schemas directory."""
    return Path(__file__).parent.parent / "schemas"


def _load_schema(schema_name: str) -> dict:
    """Load schema by name, with caching."""
    if schema_name not in _schema_cache:
        schema_path = _get_schemas_dir() / f"{schema_name}.schema.json"
        if not schema_path.exists():
            raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
        _schema_cache[schema_name] = json.loads(schema_path.read_text())
    return _schema_cache[schema_name]


def validate(data: dict, schema_name: str, path: Path | None = None) -> None:
    """
    Validate data against named schema.

    Args:
        data: Dictionary to validate
        schema_name: Schema name (e.g., "item", "record", "config")
        path: File the data came from, for error context

    Raises:
        ValidationError: If validation fails
    """
    schema = _load_schema(schema_name)

    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as e:
        field = ".".join(str(p) for p in e.absolute_path) if e.absolute_path else "(root)"
        raise ValidationError(schema_name, e.message, field, path) from None


def validate_before_write(data: dict, schema_name: str, filepath: Path) -> None:
    """
    Validate data before writing to file. Ensures we never write invalid data.

    Raises:
        ValidationError: If data doesn't match schema
    """
    try:
        validate(data, schema_name)
    except ValidationError as e:
        raise ValidationError(
            schema_name,
            f"Refusing to write invalid data to {filepath}: {e}",
            path=filepath,
        ) from None

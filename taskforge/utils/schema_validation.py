"""
Schema Validation Utilities
===========================
Named JSON schemas for backend replies and knowledge store entries.

Each ``Schema`` member maps to ``taskforge/schemas/<name>.schema.json``.
Validators are compiled once per schema (Draft 2020-12 with format
checking) and report every violation, not just the first.
"""

from __future__ import annotations

import json
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Union

from jsonschema import Draft202012Validator, FormatChecker
from jsonschema.exceptions import SchemaError, ValidationError


SCHEMAS_DIR = Path(__file__).resolve().parent.parent / "schemas"
SCHEMA_SUFFIX = ".schema.json"


class Schema(str, Enum):
    """Schemas shipped with taskforge."""
    EXECUTION_RESULT = "execution_result"
    REVIEW = "review"
    DECISION = "decision"
    DURABILITY = "durability"
    DECOMPOSITION = "decomposition"
    REQUIREMENT_CHANGE = "requirement_change"
    TASK_PLAN = "task_plan"
    KNOWLEDGE_ENTRY = "knowledge_entry"


SchemaRef = Union[Schema, str]


class SchemaViolation(ValueError):
    """Payload did not validate. ``errors`` holds every violation found."""

    def __init__(self, schema: str, errors: List[str]):
        self.schema = schema
        self.errors = errors
        message = errors[0]
        if len(errors) > 1:
            message += f" (+{len(errors) - 1} more)"
        super().__init__(f"{schema}: {message}")


def _schema_name(schema: SchemaRef) -> str:
    return schema.value if isinstance(schema, Schema) else str(schema)


def schema_path(schema: SchemaRef) -> Path:
    """Resolve a schema name to its file.

    Raises:
        ValueError: When the name points outside taskforge/schemas.
        FileNotFoundError: When no such schema file exists.
    """
    name = _schema_name(schema)
    path = (SCHEMAS_DIR / f"{name}{SCHEMA_SUFFIX}").resolve()
    if not path.is_relative_to(SCHEMAS_DIR.resolve()):
        raise ValueError(f"Schema name escapes schemas directory: {name}")
    if not path.exists():
        raise FileNotFoundError(f"Schema not found: {name}")
    return path


@lru_cache(maxsize=None)
def _compiled(name: str) -> Draft202012Validator:
    path = schema_path(name)
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Failed to load schema {name}: {e}")

    if not isinstance(document, dict):
        raise ValueError(f"Schema {name} must be a JSON object")
    try:
        Draft202012Validator.check_schema(document)
    except SchemaError as e:
        raise ValueError(f"Schema {name} is not a valid Draft 2020-12 schema: {e.message}")
    return Draft202012Validator(document, format_checker=FormatChecker())


def validator_for(schema: SchemaRef) -> Draft202012Validator:
    """Compiled validator for ``schema``, cached per name."""
    return _compiled(_schema_name(schema))


def _describe(error: ValidationError) -> str:
    path = "/".join(str(p) for p in error.absolute_path)
    return f"at '{path}': {error.message}" if path else error.message


def schema_errors(payload: Any, schema: SchemaRef) -> List[str]:
    """Every violation of ``schema`` in ``payload``, ordered by location."""
    errors = sorted(
        validator_for(schema).iter_errors(payload),
        key=lambda e: [str(p) for p in e.absolute_path],
    )
    return [_describe(e) for e in errors]


def validate_against_schema(payload: Any, schema: SchemaRef) -> None:
    """Validate ``payload`` against a named schema.

    Raises:
        SchemaViolation: When the payload fails validation.
    """
    errors = schema_errors(payload, schema)
    if errors:
        raise SchemaViolation(_schema_name(schema), errors)

"""
Schema Validation - JSON Schema validation utilities.

Provides functions to validate provider configuration documents against the
JSON Schema registered for their schema version.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, SchemaError

logger = logging.getLogger(__name__)


def validate_schema(schema: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Validate that a schema is itself a valid JSON Schema (Draft 7).

    Args:
        schema: The schema to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        Draft7Validator.check_schema(schema)
        return True, None
    except SchemaError as e:
        return False, f"Invalid schema: {e.message}"


def validate_document(
    document: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a decoded payload document against a JSON Schema.

    Args:
        document: The decoded document to validate
        schema: The JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message). All violations are joined into
        a single message, each prefixed with its dotted path.
    """
    validator = Draft7Validator(schema)
    errors = sorted(
        validator.iter_errors(document),
        key=lambda e: [str(p) for p in e.absolute_path],
    )

    if not errors:
        return True, None

    error_messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        error_messages.append(f"{path}: {error.message}")

    return False, "; ".join(error_messages)

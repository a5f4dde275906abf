"""
Schema Validation - JSON Schema checks for resource properties.

Providers publish a Draft 7 JSON Schema per resource type. Declared
properties are checked against it before planning. A value that still
holds a ``${id.attr}`` reference cannot be checked until apply, so errors
reported at such a value are ignored.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from jsonschema import Draft7Validator, SchemaError

from errors import DeclarationError
from models import Resource
from references import contains_reference

logger = logging.getLogger(__name__)


def validate_schema(schema: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Validate that a schema is a valid Draft 7 JSON Schema.

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        Draft7Validator.check_schema(schema)
        return True, None
    except SchemaError as e:
        return False, f"Invalid schema: {e.message}"


def _value_at(document: Any, path: Iterable[Any]) -> Any:
    current = document
    for segment in path:
        try:
            current = current[segment]
        except (KeyError, IndexError, TypeError):
            return None
    return current


def _holds_reference(document: Any, path: List[Any]) -> bool:
    return contains_reference(_value_at(document, path))


def validate_properties(
    properties: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate resource properties against a JSON Schema.

    Args:
        properties: The declared properties (references unresolved).
        schema: The JSON Schema for the resource type.

    Returns:
        Tuple of (is_valid, error_message)
    """
    validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
    messages = []
    for error in sorted(validator.iter_errors(properties), key=lambda e: list(e.absolute_path)):
        path = list(error.absolute_path)
        if path and _holds_reference(properties, path):
            continue
        location = ".".join(str(p) for p in path) or "(root)"
        messages.append(f"{location}: {error.message}")

    if messages:
        return False, "; ".join(messages)
    return True, None


def validate_resources(
    resources: Iterable[Resource], schemas: Mapping[str, Optional[Dict[str, Any]]]
) -> None:
    """
    Check every resource's type is known and its properties match the schema.

    Args:
        resources: Declared resources.
        schemas: Resource type tag -> JSON Schema (None to skip the check).

    Raises:
        DeclarationError: Listing every offending resource.
    """
    problems = []
    for resource in sorted(resources, key=lambda r: r.id):
        if resource.type not in schemas:
            problems.append(f"{resource.id}: unknown resource type '{resource.type}'")
            continue
        schema = schemas[resource.type]
        if not schema:
            continue
        valid, error = validate_properties(resource.properties, schema)
        if not valid:
            problems.append(f"{resource.id} ({resource.type}): {error}")

    if problems:
        for problem in problems:
            logger.error(f"Validation failed: {problem}")
        raise DeclarationError("Invalid resources: " + " | ".join(problems))

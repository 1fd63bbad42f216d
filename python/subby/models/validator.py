"""
subby/models/validator.py

Validation helpers that turn untrusted payloads (key files, token responses,
publish responses) into typed values using pydantic's TypeAdapter, raising a
caller-chosen error type on failure.
"""

import json
from typing import Any, Callable, Type, TypeVar
from pydantic import ValidationError, TypeAdapter

T = TypeVar("T")

ErrorFactory = Callable[[str], Exception]


def validate_type(
    obj: Any, expected_type: Type[T], error: ErrorFactory = ValueError
) -> T:
    """
    Validates that a given Python object conforms to the expected pydantic-based type.

    Args:
        obj (Any): The object to validate.
        expected_type (Type[T]): The type (pydantic or otherwise) to validate against.
        error (ErrorFactory): Builds the exception raised on failure. Defaults to ValueError.

    Returns:
        T: The validated object, cast to the expected type.

    Raises:
        Exception: Whatever `error` builds, if validation fails.
    """
    try:
        adapter = TypeAdapter(expected_type)
        return adapter.validate_python(obj)
    except ValidationError as e:
        raise error(
            f"Validation failed for type {getattr(expected_type, '__name__', expected_type)}: "
            f"{e.error_count()} error(s) at {_error_locations(e)}"
        ) from e


def parse_json(text: str, expected_type: Type[T], error: ErrorFactory = ValueError) -> T:
    """
    Decode a JSON document and validate it against `expected_type`.

    Raises:
        Exception: Whatever `error` builds, if the text is not JSON or fails validation.
    """
    try:
        raw = json.loads(text)
    except ValueError as e:
        raise error(f"Malformed JSON: {e.msg}") from e
    return validate_type(raw, expected_type, error)


def _error_locations(exc: ValidationError) -> str:
    # Only field locations are reported; input values may hold secrets.
    return ", ".join(
        ".".join(str(part) for part in err["loc"]) or "<root>" for err in exc.errors()
    )

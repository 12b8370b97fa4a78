"""
talosforge/models/validator.py

Validates loosely typed data (parsed YAML/JSON from state files, kubectl and
talosctl output) against pydantic-based types using TypeAdapter.
"""

from typing import Any, Type, TypeVar
from pydantic import ValidationError, TypeAdapter

T = TypeVar("T")


def validate_type(obj: Any, expected_type: Type[T]) -> T:
    """
    Validates that a given Python object conforms to the expected type.

    Args:
        obj (Any): The object to validate, usually freshly parsed YAML or JSON.
        expected_type (Type[T]): The type (pydantic model or plain typing
            construct such as Dict[str, str]) to validate against.

    Returns:
        T: The validated object, coerced to the expected type.

    Raises:
        ValueError: If validation fails.
    """
    try:
        return TypeAdapter(expected_type).validate_python(obj)
    except ValidationError as e:
        raise ValueError(f"Validation failed for type {expected_type}: {e}") from e

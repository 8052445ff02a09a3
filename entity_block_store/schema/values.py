"""Block content encoding and value type checks."""

from __future__ import annotations

import json
from datetime import date, datetime
from pathlib import Path
from typing import Any
from uuid import UUID

from entity_block_store.models.template import PropertyDefinition


class PropertyValueError(ValueError):
    """Raised when a value does not match its property's declared type."""

    def __init__(self, key: str, expected: str, value: Any):
        self.key = key
        self.expected = expected
        super().__init__(
            f"Property '{key}' expects a {expected} value, received {type(value).__name__}."
        )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


_TYPE_CHECKS = {
    "number": _is_number,
    "integer": lambda value: isinstance(value, int) and not isinstance(value, bool),
    "boolean": lambda value: isinstance(value, bool),
    "array": lambda value: isinstance(value, (list, tuple)),
    "object": lambda value: isinstance(value, dict),
}


def check_value(definition: PropertyDefinition, value: Any) -> None:
    """Raise ``PropertyValueError`` when ``value`` violates the declared type.

    ``text``/``string`` and unrecognised types accept any JSON-serializable value.
    """
    check = _TYPE_CHECKS.get(definition.type.lower())
    if check is not None and not check(value):
        raise PropertyValueError(definition.key, definition.type, value)
    try:
        _jsonable(value)
    except TypeError:
        raise PropertyValueError(definition.key, "JSON-serializable", value) from None


def encode_value(value: Any) -> str:
    """Serialize a property value into block content."""
    return json.dumps(_jsonable(value), ensure_ascii=False)


def decode_value(content: str | None) -> Any:
    """Inverse of :func:`encode_value`; legacy plain-text content is returned as-is."""
    if content is None:
        return None
    try:
        return json.loads(content)
    except (TypeError, ValueError):
        return content


def _jsonable(value):
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {str(key): _jsonable(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    raise TypeError(f"Unsupported block value: {type(value)!r}")


__all__ = ["PropertyValueError", "check_value", "decode_value", "encode_value"]

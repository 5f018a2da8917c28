"""Safe queries over decoded JSON documents.

Decoded JSON is the plain Python tree produced by the codec
(dict/list/str/int/float/bool/None). Lookups here never raise; a missing
or mistyped path yields ``None``.
"""

import re
from enum import Enum
from typing import Any


class JsonKind(str, Enum):
    """Structural kind of a decoded JSON value."""

    OBJECT = "OBJECT"
    ARRAY = "ARRAY"
    STRING = "STRING"
    INTEGER = "INTEGER"
    FLOAT = "FLOAT"
    BOOLEAN = "BOOLEAN"
    NULL = "NULL"


_PATH_PART = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


def kind_of(value: Any) -> JsonKind | None:
    """Return the JSON kind of a decoded value.

    Args:
        value: Decoded JSON value.

    Returns:
        Matching kind, or None if the value is not a JSON type.
    """
    # bool is checked before int because bool subclasses int
    if value is None:
        return JsonKind.NULL
    if isinstance(value, bool):
        return JsonKind.BOOLEAN
    if isinstance(value, int):
        return JsonKind.INTEGER
    if isinstance(value, float):
        return JsonKind.FLOAT
    if isinstance(value, str):
        return JsonKind.STRING
    if isinstance(value, dict):
        return JsonKind.OBJECT
    if isinstance(value, list | tuple):
        return JsonKind.ARRAY
    return None


def _split_path(path: str) -> list[str | int] | None:
    parts: list[str | int] = []
    position = 0
    for match in _PATH_PART.finditer(path):
        gap = path[position : match.start()]
        if gap not in ("", "."):
            return None
        key, index = match.groups()
        parts.append(int(index) if index is not None else key)
        position = match.end()
    if path[position:]:
        return None
    return parts


def select_token(value: Any, path: str) -> Any | None:
    """Select a nested value by a dotted path such as ``errors[0].title``.

    Args:
        value: Decoded JSON document.
        path: Dotted path with optional ``[n]`` array indices.

    Returns:
        The selected value, or None if any segment is missing.
    """
    parts = _split_path(path)
    if not parts:
        return None

    current = value
    for part in parts:
        if isinstance(part, int):
            if not isinstance(current, list | tuple) or part >= len(current):
                return None
            current = current[part]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(part)
        if current is None:
            return None
    return current


def select_string(value: Any, path: str, default: str | None = None) -> str | None:
    """Select a non-empty string at ``path``.

    Args:
        value: Decoded JSON document.
        path: Dotted path to the value.
        default: Returned when the path is absent or not a non-empty string.

    Returns:
        The string found, or ``default``.
    """
    token = select_token(value, path)
    if isinstance(token, str) and token:
        return token
    return default

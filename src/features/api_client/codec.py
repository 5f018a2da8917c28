"""JSON codec used for request bodies and response documents."""

import dataclasses
import json
from datetime import date, datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

from src.features.api_client.errors import CodecError


@runtime_checkable
class Codec(Protocol):
    """Protocol for body codecs.

    Both operations raise :class:`CodecError` on values or payloads they
    cannot handle.
    """

    def serialize(self, obj: object) -> bytes:
        """Encode an object into bytes."""
        ...

    def deserialize(self, payload: bytes) -> Any:
        """Decode bytes into a structured value."""
        ...


def _camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


class JsonCodec:
    """JSON codec with configurable serializer options.

    Attributes:
        include_null_values: Keep keys whose value is None.
        enums_as_strings: Encode enums by name instead of by value.
        camel_case: Rename object keys from snake_case to camelCase.
        indent: Indentation for pretty output, or None for compact output.
    """

    def __init__(
        self,
        include_null_values: bool = False,
        enums_as_strings: bool = True,
        camel_case: bool = False,
        indent: int | None = None,
    ) -> None:
        self.include_null_values = include_null_values
        self.enums_as_strings = enums_as_strings
        self.camel_case = camel_case
        self.indent = indent

    def serialize(self, obj: object) -> bytes:
        """Encode an object as UTF-8 JSON.

        Args:
            obj: Value to encode. Pydantic models, dataclasses, enums,
                dates and sets are converted before encoding.

        Returns:
            Encoded JSON bytes.

        Raises:
            CodecError: If the value cannot be represented as JSON.
        """
        try:
            prepared = self._prepare(obj, seen=set())
            text = json.dumps(
                prepared,
                indent=self.indent,
                ensure_ascii=False,
                separators=None if self.indent is not None else (",", ":"),
                allow_nan=False,
            )
        except (TypeError, ValueError, RecursionError) as e:
            msg = f"Cannot serialize {type(obj).__name__} to JSON: {e}"
            raise CodecError(msg) from e
        return text.encode("utf-8")

    def deserialize(self, payload: bytes) -> Any:
        """Decode JSON bytes.

        Args:
            payload: Encoded JSON document.

        Returns:
            Decoded value.

        Raises:
            CodecError: If the payload is not valid JSON.
        """
        try:
            return json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as e:
            msg = f"Invalid JSON payload: {e}"
            raise CodecError(msg) from e

    def _prepare(self, obj: object, seen: set[int]) -> Any:  # noqa: PLR0911
        if obj is None or isinstance(obj, bool | int | float | str):
            return obj
        if isinstance(obj, Enum):
            return obj.name if self.enums_as_strings else self._prepare(obj.value, seen)
        if isinstance(obj, datetime | date):
            return obj.isoformat()
        if isinstance(obj, bytes):
            return obj.decode("utf-8")

        # Containers are tracked to report reference cycles instead of recursing
        marker = id(obj)
        if marker in seen:
            msg = "Circular reference detected"
            raise ValueError(msg)
        seen = seen | {marker}

        if isinstance(obj, BaseModel):
            return self._prepare_mapping(obj.model_dump(), seen)
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            fields = {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}
            return self._prepare_mapping(fields, seen)
        if isinstance(obj, dict):
            return self._prepare_mapping(obj, seen)
        if isinstance(obj, list | tuple | set | frozenset):
            return [self._prepare(item, seen) for item in obj]

        msg = f"Object of type {type(obj).__name__} is not JSON serializable"
        raise TypeError(msg)

    def _prepare_mapping(self, mapping: dict[Any, Any], seen: set[int]) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key, value in mapping.items():
            if value is None and not self.include_null_values:
                continue
            name = str(key.value if isinstance(key, Enum) else key)
            if self.camel_case:
                name = _camel_case(name)
            result[name] = self._prepare(value, seen)
        return result


def flatten_form(document: Any) -> dict[str, str]:
    """Flatten a decoded JSON object into form fields.

    Nested keys are joined with dots and list items are indexed, so
    ``{"user": {"tags": ["a"]}}`` becomes ``{"user.tags[0]": "a"}``. Null
    values and empty containers produce no field.

    Args:
        document: Decoded JSON object.

    Returns:
        Field names mapped to their string values.

    Raises:
        CodecError: If the document is not a JSON object.
    """
    if not isinstance(document, dict):
        msg = f"Form body must be an object, got {type(document).__name__}"
        raise CodecError(msg)
    fields: dict[str, str] = {}
    _flatten_into(fields, document, "")
    return fields


def _flatten_into(fields: dict[str, str], value: Any, path: str) -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            _flatten_into(fields, item, f"{path}.{key}" if path else str(key))
    elif isinstance(value, list):
        for index, item in enumerate(value):
            _flatten_into(fields, item, f"{path}[{index}]")
    elif isinstance(value, bool):
        fields[path] = "true" if value else "false"
    elif value is not None:
        fields[path] = str(value)

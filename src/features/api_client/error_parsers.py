"""Extraction of structured errors from decoded error bodies.

Parsers run in order against an envelope draft whose JSON body is already
decoded. The first parser that recognizes the document wins. The
problem-details parser (RFC 7807) is always the last, fallback entry.
"""

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

import structlog

from src.features.api_client.json_tree import select_string
from src.features.api_client.models import EnvelopeDraft, ErrorCategory


logger = structlog.get_logger()

_PROBLEM_FIELDS = ("title", "type", "detail", "instance")


@runtime_checkable
class ErrorParser(Protocol):
    """Protocol for known-error parsers.

    Implementations inspect ``draft.data`` and fill in the error fields
    of the draft when they recognize the document.
    """

    def try_parse(self, draft: EnvelopeDraft) -> bool:
        """Extract a known error shape.

        Args:
            draft: Envelope under construction, with ``data`` decoded.

        Returns:
            True if the document was recognized and error fields were set.
        """
        ...


def _first_object(value: Any) -> dict[str, Any] | None:
    if isinstance(value, dict):
        return value
    if isinstance(value, list):
        for item in value:
            if isinstance(item, dict):
                return item
    return None


def _string_field(obj: dict[str, Any], name: str) -> str | None:
    return select_string(obj, name) or select_string(obj, f"error.{name}")


class ProblemDetailsErrorParser:
    """Parses problem-details style error documents.

    The error object is located by trying, in order, an ``errors`` key, an
    ``error`` key (for both, an array yields its first object) and then the
    document root. The first of these holding any of ``title``, ``type``,
    ``detail`` or ``instance`` is used, also looking one level down under a
    nested ``error`` object. A keyed validation map under ``errors`` thus
    leaves the root fields in charge.
    A bare ``{"error": "message"}`` is used as title, or as extra detail when
    a title was already found.
    """

    def __init__(self) -> None:
        self._log = logger.bind(component="error_parser", parser="problem_details")

    def try_parse(self, draft: EnvelopeDraft) -> bool:
        """Extract problem-details fields from ``draft.data``.

        Args:
            draft: Envelope under construction.

        Returns:
            True if at least one of title/type/detail/instance was found.
        """
        document = draft.data
        if not isinstance(document, dict):
            return False

        candidates = (
            _first_object(document.get("errors")),
            _first_object(document.get("error")),
            document,
        )
        root = document
        found: dict[str, str | None] = dict.fromkeys(_PROBLEM_FIELDS)
        # A candidate without any known field falls through to the next one
        for candidate in candidates:
            if candidate is None:
                continue
            fields = {name: _string_field(candidate, name) for name in _PROBLEM_FIELDS}
            if any(fields.values()):
                root, found = candidate, fields
                break

        bare_error = root.get("error")
        if not isinstance(bare_error, str):
            bare_error = document.get("error")
        if isinstance(bare_error, str) and bare_error:
            if found["title"] is None:
                found["title"] = bare_error
            elif found["detail"] is None:
                found["detail"] = bare_error
            else:
                found["detail"] = f"{found['detail']}\n{bare_error}"

        if not any(found.values()):
            return False

        if found["title"] is not None:
            draft.error_title = found["title"]
        if found["type"] is not None:
            draft.error_type = found["type"]
        if found["detail"] is not None:
            draft.error_detail = found["detail"]
        if found["instance"] is not None:
            draft.error_instance = found["instance"]
        draft.error_category = ErrorCategory.ERROR_RETURNED_BY_SERVER

        self._log.debug(
            "known_error_found",
            resource=draft.resource,
            fields=[name for name, value in found.items() if value is not None],
        )
        return True


class ErrorParserChain:
    """Ordered list of error parsers ending with the problem-details fallback."""

    def __init__(self, parsers: Sequence[ErrorParser] = ()) -> None:
        """Initialize the chain.

        Args:
            parsers: Parsers to try before the problem-details fallback.
        """
        self._parsers: tuple[ErrorParser, ...] = (
            *parsers,
            ProblemDetailsErrorParser(),
        )
        self._log = logger.bind(component="error_parser_chain")

    @property
    def parsers(self) -> tuple[ErrorParser, ...]:
        """Get the parsers in the order they run."""
        return self._parsers

    def parse(self, draft: EnvelopeDraft) -> bool:
        """Run parsers until one recognizes the document.

        A parser that raises is treated as not matching.

        Args:
            draft: Envelope under construction.

        Returns:
            True if any parser recognized the document.
        """
        for parser in self._parsers:
            try:
                if parser.try_parse(draft):
                    return True
            except Exception as e:  # noqa: BLE001
                self._log.warning(
                    "error_parser_failed",
                    parser=type(parser).__name__,
                    resource=draft.resource,
                    error=str(e),
                )
        return False

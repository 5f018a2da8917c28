"""Response classification into result envelopes.

The classifier turns whatever a logical call ended with, a response or a
failed attempt, into a :class:`ResultEnvelope`. It never raises: problems
met while building an envelope are recorded on the envelope itself.
"""

import io
from datetime import UTC, datetime

import httpx
import structlog

from src.features.api_client.codec import Codec, JsonCodec
from src.features.api_client.constants import (
    DEFAULT_ERROR_PREVIEW_LENGTH,
    HTTP_STATUS_OK_MAX,
    HTTP_STATUS_OK_MIN,
    JSON_MEDIA_TYPES,
)
from src.features.api_client.error_parsers import ErrorParserChain
from src.features.api_client.json_tree import kind_of
from src.features.api_client.models import (
    AttemptContext,
    AttemptFailure,
    EnvelopeDraft,
    ErrorCategory,
    FailureKind,
    ResultEnvelope,
)
from src.features.api_client.redirect import RedirectTracker
from src.features.api_client.retry import parse_retry_after


logger = structlog.get_logger()

_INCOMPLETE_NOTE = (
    "The result envelope could not be fully generated. "
    "Refer to the exception field for details of the error"
)

_FAILURE_TITLES = {
    FailureKind.CANCELLED: ("Request Cancelled", ErrorCategory.REQUEST_CANCELLED),
    FailureKind.TIMEOUT: ("Request Timed Out", ErrorCategory.REQUEST_TIMEOUT),
    FailureKind.CONNECTION: ("Request Error", ErrorCategory.REQUEST_ERROR),
    FailureKind.ERROR: ("Request Error", ErrorCategory.REQUEST_ERROR),
}


def is_json_content_type(content_type: str | None) -> bool:
    """Check if a content type belongs to the JSON family.

    Matching is case-insensitive and tolerates parameters such as charset.

    Args:
        content_type: Content-Type header value.

    Returns:
        True for ``application/json`` and ``application/problem+json``.
    """
    if not content_type:
        return False
    lowered = content_type.lower()
    return any(media_type in lowered for media_type in JSON_MEDIA_TYPES)


def truncate(text: str, max_length: int) -> str:
    """Shorten text to ``max_length`` characters, ending with ``...``.

    Text that already fits, or a length too small to hold the suffix,
    returns the text unchanged.

    Args:
        text: Text to shorten.
        max_length: Maximum length of the result, suffix included.

    Returns:
        The possibly shortened text.
    """
    suffix = "..."
    keep = max_length - len(suffix)
    if max_length <= 0 or keep <= 0 or len(text) <= max_length:
        return text
    return text[:keep].rstrip() + suffix


def _inner_exception(exc: BaseException) -> BaseException | None:
    if exc.__cause__ is not None:
        return exc.__cause__
    if exc.__context__ is not None and not exc.__suppress_context__:
        return exc.__context__
    return None


def _now() -> datetime:
    return datetime.now(UTC)


class ResponseClassifier:
    """Builds result envelopes from responses and failed attempts."""

    def __init__(
        self,
        error_parsers: ErrorParserChain | None = None,
        codec: Codec | None = None,
        always_populate_response_body: bool = False,
        populate_response_body_on_parsing_error: bool = True,
        error_preview_length: int = DEFAULT_ERROR_PREVIEW_LENGTH,
    ) -> None:
        """Initialize the classifier.

        Args:
            error_parsers: Chain run against decoded error bodies.
            codec: Codec used to decode JSON bodies.
            always_populate_response_body: Also keep the raw text when the
                body was decoded or buffered.
            populate_response_body_on_parsing_error: Re-read the body as text
                when decoding fails.
            error_preview_length: Maximum length of the body preview used as
                error detail.
        """
        self._error_parsers = error_parsers or ErrorParserChain()
        self._codec = codec or JsonCodec()
        self._always_populate_response_body = always_populate_response_body
        self._populate_response_body_on_parsing_error = (
            populate_response_body_on_parsing_error
        )
        self._error_preview_length = error_preview_length
        self._redirects = RedirectTracker()
        self._log = logger.bind(component="response_classifier")

    def classify_response(
        self,
        response: httpx.Response | None,
        context: AttemptContext,
        elapsed_s: float = 0.0,
    ) -> ResultEnvelope:
        """Build the envelope for a call that received a response.

        Args:
            response: Final response of the call. None yields a bare failure.
            context: Context of the logical call.
            elapsed_s: Total duration of the call.

        Returns:
            The result envelope.
        """
        draft = EnvelopeDraft(
            success=False,
            resource=context.resource_path,
            timestamp=_now(),
            retry_trail=context.snapshot(),
            elapsed_s=elapsed_s,
        )
        if response is None:
            return self._freeze(draft)

        try:
            self._fill_response_fields(draft, response, context)
            self._read_body(draft, response)
            if not (HTTP_STATUS_OK_MIN <= response.status_code < HTTP_STATUS_OK_MAX):
                self._enrich_failure(draft, response)
        except Exception as e:  # noqa: BLE001
            self._mark_incomplete(draft, e)

        return self._freeze(draft)

    def classify_failure(
        self,
        failure: AttemptFailure,
        method: str | None,
        url: str | None,
        context: AttemptContext,
        elapsed_s: float = 0.0,
    ) -> ResultEnvelope:
        """Build the envelope for a call whose last attempt got no response.

        Args:
            failure: Failure of the last attempt.
            method: HTTP method that was attempted.
            url: URL that was attempted.
            context: Context of the logical call.
            elapsed_s: Total duration of the call.

        Returns:
            The result envelope.
        """
        draft = EnvelopeDraft(
            success=False,
            resource=context.resource_path,
            timestamp=_now(),
            elapsed_s=elapsed_s,
        )
        try:
            exc = failure.exception
            draft.method = method
            draft.exception = exc
            title, category = _FAILURE_TITLES[failure.kind]
            draft.error_title = title
            draft.error_category = category
            if failure.kind == FailureKind.CANCELLED:
                detail = (
                    f"The request was cancelled while sending {method} request "
                    f'to resource: "{context.resource_path}"'
                )
            else:
                detail = (
                    f"Error occurred while sending {method} request "
                    f'to resource: "{context.resource_path}"'
                )
            draft.error_detail = detail

            inner = _inner_exception(exc)
            if inner is not None:
                draft.error_type = f"{type(exc).__name__} | {type(inner).__name__}"
                draft.error_detail = (
                    f"{detail} \nException: {failure.message} \n{inner}"
                )
            else:
                draft.error_type = type(exc).__name__
                draft.error_detail = f"{detail} \nException: {failure.message}"

            self._log.error(
                "request_failed",
                resource=context.resource_path,
                method=method,
                failure_kind=failure.kind.value,
                error_type=draft.error_type,
                error=failure.message,
            )

            draft.retry_trail = context.snapshot()
            draft.original_method = context.original_method
            draft.url = url
            draft.original_url = context.original_url
            redirect = self._redirects.detect(context, url)
            draft.redirected = redirect.redirected
        except Exception as e:  # noqa: BLE001
            self._mark_incomplete(draft, e)

        return self._freeze(draft)

    def serialization_failure(
        self,
        method: str,
        path: str,
        exception: BaseException,
        elapsed_s: float = 0.0,
    ) -> ResultEnvelope:
        """Build the envelope for a request body that could not be encoded.

        Args:
            method: HTTP method of the call.
            path: Resource path of the call.
            exception: Error raised by the codec.
            elapsed_s: Time spent before the failure.

        Returns:
            The result envelope. No request was sent.
        """
        detail = (
            f"Error occurred while serializing the body of {method} request "
            f'to resource: "{path}" \nException: {exception}'
        )
        self._log.error(
            "request_serialization_failed", resource=path, method=method, error=str(exception)
        )
        draft = EnvelopeDraft(
            success=False,
            resource=path,
            timestamp=_now(),
            method=method,
            error_category=ErrorCategory.REQUEST_SERIALIZATION,
            error_title="Request Serialization Error",
            error_type=type(exception).__name__,
            error_detail=detail,
            exception=exception,
            elapsed_s=elapsed_s,
        )
        return self._freeze(draft)

    def _fill_response_fields(
        self, draft: EnvelopeDraft, response: httpx.Response, context: AttemptContext
    ) -> None:
        draft.success = HTTP_STATUS_OK_MIN <= response.status_code < HTTP_STATUS_OK_MAX
        draft.status_code = response.status_code
        draft.status_text = response.reason_phrase
        draft.headers = dict(response.headers)
        draft.content_type = response.headers.get("content-type")
        draft.retry_after_s = parse_retry_after(response.headers.get("retry-after"))

        request = response.request
        draft.url = str(request.url)
        draft.method = request.method

        redirect = self._redirects.detect(context, draft.url)
        draft.redirected = redirect.redirected
        if redirect.redirected:
            draft.original_url = redirect.original_url
            draft.original_method = redirect.original_method

        self._log.debug(
            "response_received",
            resource=draft.resource,
            status_code=draft.status_code,
            content_type=draft.content_type,
            success=draft.success,
        )

    def _read_body(self, draft: EnvelopeDraft, response: httpx.Response) -> None:
        try:
            if is_json_content_type(draft.content_type):
                if self._always_populate_response_body:
                    draft.body = response.text
                content = response.content
                if content.strip():
                    draft.data = self._codec.deserialize(content)
                    draft.data_kind = kind_of(draft.data)
            else:
                if draft.content_type is None:
                    self._log.warning(
                        "content_type_missing",
                        resource=draft.resource,
                        hint="treating response body as raw content",
                    )
                # The response is released after classification; keep an owned copy
                stream = io.BytesIO(response.content)
                stream.seek(0)
                draft.body_stream = stream
                if self._always_populate_response_body:
                    draft.body = response.text
        except Exception as e:  # noqa: BLE001
            self._handle_parsing_error(draft, response, e)

    def _handle_parsing_error(
        self, draft: EnvelopeDraft, response: httpx.Response, exc: Exception
    ) -> None:
        detail = (
            "Error occurred while parsing the response body with content type: "
            f"{draft.content_type} from resource: {draft.resource} \nError: {exc}"
        )
        self._log.error(
            "response_body_parsing_failed",
            resource=draft.resource,
            content_type=draft.content_type,
            error=str(exc),
        )
        draft.success = False
        draft.exception = exc
        draft.error_title = "Response Body Parsing Error"
        draft.error_type = "ResponseBodyParsingError"
        draft.error_category = ErrorCategory.RESPONSE_BODY_PARSING
        draft.error_detail = detail
        draft.body_parsing_failed = True
        draft.data = None
        draft.data_kind = None

        if not self._populate_response_body_on_parsing_error:
            return
        try:
            draft.body = response.text
            draft.error_detail = (
                f"{detail} \nThe response body was read as a string instead. "
                "Refer to the exception field for details of the error"
            )
        except Exception as e:  # noqa: BLE001
            self._log.error(
                "response_body_unreadable", resource=draft.resource, error=str(e)
            )
            draft.error_detail = (
                f"{detail} \nThe response body could not even be read as a string. "
                "Refer to the exception field for details of the error"
            )

    def _enrich_failure(self, draft: EnvelopeDraft, response: httpx.Response) -> None:
        challenge = response.headers.get("www-authenticate")
        status = f"StatusCode: {draft.status_code} ({draft.status_text})"
        parsing_failed = draft.body_parsing_failed

        if challenge:
            title = f"Authentication Failure: {challenge} {status}"
            error_type = "AuthenticationError"
            category = ErrorCategory.AUTHENTICATION
        else:
            title = f"Failure {status}"
            error_type = "FailureStatusCode"
            category = ErrorCategory.FAILURE_STATUS_CODE

        # A parsing failure keeps its own title, type, category and detail
        if parsing_failed:
            draft.error_title = f"{draft.error_title} {status}"
        else:
            draft.error_title = title
            draft.error_type = error_type
            draft.error_category = category
        self._log.error(
            "failure_status_code",
            resource=draft.resource,
            status_code=draft.status_code,
            error_title=draft.error_title,
        )

        if draft.data is not None:
            self._error_parsers.parse(draft)
            return

        preview_source = draft.body
        if preview_source is None and draft.body_stream is not None:
            preview_source = draft.body_stream.getvalue().decode(
                response.encoding or "utf-8", errors="replace"
            )
        if preview_source:
            if not parsing_failed:
                draft.error_detail = truncate(preview_source, self._error_preview_length)
            return

        self._log.error(
            "failure_body_empty",
            resource=draft.resource,
            hint="no additional error information is available",
        )

    def _mark_incomplete(self, draft: EnvelopeDraft, exc: Exception) -> None:
        self._log.error(
            "envelope_incomplete", resource=draft.resource, error=str(exc), exc_info=True
        )
        draft.success = False
        if draft.exception is None:
            draft.exception = exc
        if draft.error_detail:
            draft.error_detail = f"{draft.error_detail} \n{_INCOMPLETE_NOTE}"
        else:
            draft.error_detail = _INCOMPLETE_NOTE

    def _freeze(self, draft: EnvelopeDraft) -> ResultEnvelope:
        """Freeze the draft, degrading to a minimal envelope if it is invalid."""
        try:
            return draft.to_envelope()
        except Exception as e:  # noqa: BLE001
            self._log.error(
                "envelope_freeze_failed",
                resource=draft.resource,
                error=str(e),
                exc_info=True,
            )
            status_code = draft.status_code
            return ResultEnvelope(
                success=False,
                resource=draft.resource,
                timestamp=draft.timestamp,
                status_code=status_code if isinstance(status_code, int) else None,
                error_detail=_INCOMPLETE_NOTE,
                exception=e,
            )

"""Unit tests for response classification."""

import httpx
import pytest

from src.features.api_client.classifier import (
    ResponseClassifier,
    is_json_content_type,
    truncate,
)
from src.features.api_client.error_parsers import ErrorParserChain
from src.features.api_client.errors import (
    CodecError,
    RequestCancelledError,
    RequestTimeoutError,
)
from src.features.api_client.json_tree import JsonKind
from src.features.api_client.models import (
    AttemptContext,
    AttemptFailure,
    EnvelopeDraft,
    ErrorCategory,
    FailureDescriptor,
    FailureKind,
    RetryAttemptRecord,
)


URL = "https://api.example.com/items/1"


class CorruptingErrorParser:
    """Parser that stores a value the envelope model rejects."""

    def try_parse(self, draft: EnvelopeDraft) -> bool:
        """Set an invalid error category."""
        draft.error_category = "NOT_A_CATEGORY"  # type: ignore[assignment]
        return True


def make_response(
    status_code: int,
    content: bytes = b"",
    content_type: str | None = None,
    headers: dict[str, str] | None = None,
    method: str = "GET",
    url: str = URL,
) -> httpx.Response:
    """Create a response bound to a request."""
    all_headers = dict(headers or {})
    if content_type is not None:
        all_headers["Content-Type"] = content_type
    return httpx.Response(
        status_code,
        headers=all_headers,
        content=content,
        request=httpx.Request(method, url),
    )


def make_context(original_url: str = URL, method: str = "GET") -> AttemptContext:
    """Create a context whose original request was already stamped."""
    return AttemptContext(
        resource_path="items/1", original_url=original_url, original_method=method
    )


class TestHelpers:
    """Tests for content type sniffing and truncation."""

    @pytest.mark.parametrize(
        "content_type",
        [
            "application/json",
            "application/json; charset=utf-8",
            "APPLICATION/PROBLEM+JSON",
        ],
    )
    def test_json_content_types(self, content_type: str) -> None:
        """Test JSON family detection."""
        assert is_json_content_type(content_type) is True

    @pytest.mark.parametrize("content_type", [None, "", "text/html", "text/plain"])
    def test_non_json_content_types(self, content_type: str | None) -> None:
        """Test that other types are not JSON."""
        assert is_json_content_type(content_type) is False

    def test_truncate(self) -> None:
        """Test truncation with an ellipsis suffix."""
        assert truncate("a" * 120, 100) == "a" * 97 + "..."
        assert truncate("short", 100) == "short"
        assert truncate("word    " * 20, 10) == "word..."
        assert truncate("abcdef", 3) == "abcdef"
        assert truncate("abcdef", 0) == "abcdef"


class TestClassifyResponse:
    """Tests for ResponseClassifier.classify_response."""

    @pytest.fixture
    def classifier(self) -> ResponseClassifier:
        """Create a classifier with default options."""
        return ResponseClassifier()

    def test_json_success(self, classifier: ResponseClassifier) -> None:
        """Test a successful JSON response."""
        response = make_response(
            200, b'{"id": 1, "name": "pen"}', "application/json; charset=utf-8"
        )

        envelope = classifier.classify_response(response, make_context(), 0.25)

        assert envelope.success is True
        assert envelope.is_success_status is True
        assert envelope.status_code == 200
        assert envelope.status_text == "OK"
        assert envelope.method == "GET"
        assert envelope.url == URL
        assert envelope.resource == "items/1"
        assert envelope.data == {"id": 1, "name": "pen"}
        assert envelope.data_kind == JsonKind.OBJECT
        assert envelope.body is None
        assert envelope.body_stream is None
        assert envelope.redirected is False
        assert envelope.original_url is None
        assert envelope.retry_trail is None
        assert envelope.error_title is None
        assert envelope.error_text is None
        assert envelope.elapsed_s == 0.25

    def test_json_array_kind(self, classifier: ResponseClassifier) -> None:
        """Test that the structural kind of the document is recorded."""
        response = make_response(200, b"[1, 2]", "application/json")

        envelope = classifier.classify_response(response, make_context())

        assert envelope.data == [1, 2]
        assert envelope.data_kind == JsonKind.ARRAY

    def test_empty_json_body(self, classifier: ResponseClassifier) -> None:
        """Test that an empty JSON body is not a parsing failure."""
        response = make_response(204, b"", "application/json")

        envelope = classifier.classify_response(response, make_context())

        assert envelope.success is True
        assert envelope.data is None
        assert envelope.body_parsing_failed is False

    def test_problem_details_round_trip(self, classifier: ResponseClassifier) -> None:
        """Test a problem-details 404 response."""
        response = make_response(
            404,
            b'{"title":"Not Found","detail":"no such item"}',
            "application/problem+json",
        )

        envelope = classifier.classify_response(response, make_context())

        assert envelope.success is False
        assert envelope.error_title == "Not Found"
        assert envelope.error_detail == "no such item"
        assert envelope.error_type == "FailureStatusCode"
        assert envelope.error_category == ErrorCategory.ERROR_RETURNED_BY_SERVER
        assert envelope.data == {"title": "Not Found", "detail": "no such item"}
        assert envelope.error_text == (
            "Resource: items/1\n"
            "Not Found\n"
            "ErrorType: FailureStatusCode\n"
            "ErrorDetail: no such item"
        )

    def test_html_body_is_buffered(self, classifier: ResponseClassifier) -> None:
        """Test that non-JSON content is copied into a rewound stream."""
        response = make_response(200, b"<html>hello</html>", "text/html")

        envelope = classifier.classify_response(response, make_context())

        assert envelope.success is True
        assert envelope.data is None
        assert envelope.body is None
        assert envelope.body_stream is not None
        assert envelope.body_stream.read() == b"<html>hello</html>"

    def test_missing_content_type_is_buffered(
        self, classifier: ResponseClassifier
    ) -> None:
        """Test that a response without content type is kept as raw content."""
        response = make_response(200, b"raw")

        envelope = classifier.classify_response(response, make_context())

        assert envelope.content_type is None
        assert envelope.body_stream is not None
        assert envelope.body_stream.getvalue() == b"raw"

    def test_always_populate_json(self) -> None:
        """Test that raw text is kept alongside parsed JSON when enabled."""
        classifier = ResponseClassifier(always_populate_response_body=True)
        response = make_response(200, b'{"a": 1}', "application/json")

        envelope = classifier.classify_response(response, make_context())

        assert envelope.data == {"a": 1}
        assert envelope.body == '{"a": 1}'

    def test_always_populate_non_json(self) -> None:
        """Test that raw text is kept alongside the stream when enabled."""
        classifier = ResponseClassifier(always_populate_response_body=True)
        response = make_response(200, b"plain", "text/plain")

        envelope = classifier.classify_response(response, make_context())

        assert envelope.body == "plain"
        assert envelope.body_stream is not None

    def test_malformed_json(self, classifier: ResponseClassifier) -> None:
        """Test that a decode failure is captured, not raised."""
        response = make_response(200, b"{oops", "application/json")

        envelope = classifier.classify_response(response, make_context())

        assert envelope.success is False
        assert envelope.status_code == 200
        assert envelope.body_parsing_failed is True
        assert isinstance(envelope.exception, CodecError)
        assert envelope.error_title == "Response Body Parsing Error"
        assert envelope.error_type == "ResponseBodyParsingError"
        assert envelope.error_category == ErrorCategory.RESPONSE_BODY_PARSING
        assert envelope.data is None
        assert envelope.body == "{oops"
        assert envelope.error_detail is not None
        assert "read as a string instead" in envelope.error_detail

    def test_malformed_json_without_body_fallback(self) -> None:
        """Test that the text fallback can be disabled."""
        classifier = ResponseClassifier(populate_response_body_on_parsing_error=False)
        response = make_response(200, b"{oops", "application/json")

        envelope = classifier.classify_response(response, make_context())

        assert envelope.body_parsing_failed is True
        assert envelope.body is None

    def test_malformed_json_on_error_status(
        self, classifier: ResponseClassifier
    ) -> None:
        """Test that a parsing failure keeps its category on error statuses."""
        response = make_response(500, b"<html>oops", "application/json")

        envelope = classifier.classify_response(response, make_context())

        assert envelope.body_parsing_failed is True
        assert envelope.error_title == (
            "Response Body Parsing Error StatusCode: 500 (Internal Server Error)"
        )
        assert envelope.error_type == "ResponseBodyParsingError"
        assert envelope.error_category == ErrorCategory.RESPONSE_BODY_PARSING

    def test_invalid_draft_degrades_to_minimal_envelope(self) -> None:
        """Test that a draft which cannot be frozen still yields an envelope."""
        classifier = ResponseClassifier(
            error_parsers=ErrorParserChain([CorruptingErrorParser()])
        )
        response = make_response(404, b'{"code": 7}', "application/json")

        envelope = classifier.classify_response(response, make_context())

        assert envelope.success is False
        assert envelope.status_code == 404
        assert envelope.resource == "items/1"
        assert envelope.error_detail is not None
        assert "could not be fully generated" in envelope.error_detail
        assert envelope.exception is not None

    def test_authentication_challenge(self, classifier: ResponseClassifier) -> None:
        """Test that a WWW-Authenticate header marks an authentication failure."""
        response = make_response(
            401,
            b"",
            "text/plain",
            headers={"WWW-Authenticate": 'Bearer realm="api"'},
        )

        envelope = classifier.classify_response(response, make_context())

        assert envelope.success is False
        assert envelope.error_title == (
            'Authentication Failure: Bearer realm="api" StatusCode: 401 (Unauthorized)'
        )
        assert envelope.error_type == "AuthenticationError"
        assert envelope.error_category == ErrorCategory.AUTHENTICATION

    def test_failure_status_preview(self, classifier: ResponseClassifier) -> None:
        """Test that a non-JSON error body is previewed as detail."""
        body = ("Service is down for maintenance. " * 10).encode()
        response = make_response(503, body, "text/plain")

        envelope = classifier.classify_response(response, make_context())

        assert envelope.error_title == "Failure StatusCode: 503 (Service Unavailable)"
        assert envelope.error_type == "FailureStatusCode"
        assert envelope.error_category == ErrorCategory.FAILURE_STATUS_CODE
        assert envelope.error_detail is not None
        assert len(envelope.error_detail) <= 100
        assert envelope.error_detail.endswith("...")

    def test_failure_status_empty_body(self, classifier: ResponseClassifier) -> None:
        """Test an error status without any body."""
        response = make_response(500)

        envelope = classifier.classify_response(response, make_context())

        assert envelope.error_category == ErrorCategory.FAILURE_STATUS_CODE
        assert envelope.error_detail is None

    def test_unrecognized_json_error_keeps_status_title(
        self, classifier: ResponseClassifier
    ) -> None:
        """Test that JSON without known fields keeps the generic classification."""
        response = make_response(400, b'{"code": 17}', "application/json")

        envelope = classifier.classify_response(response, make_context())

        assert envelope.error_title == "Failure StatusCode: 400 (Bad Request)"
        assert envelope.error_category == ErrorCategory.FAILURE_STATUS_CODE

    def test_redirect_detected(self, classifier: ResponseClassifier) -> None:
        """Test that a different effective URL is reported as redirect."""
        context = make_context(original_url="https://api.example.com/old/1")
        response = make_response(200, b"{}", "application/json")

        envelope = classifier.classify_response(response, context)

        assert envelope.redirected is True
        assert envelope.original_url == "https://api.example.com/old/1"
        assert envelope.original_method == "GET"
        assert envelope.url == URL

    def test_retry_after_and_trail(self, classifier: ResponseClassifier) -> None:
        """Test Retry-After and the retry trail snapshot."""
        context = make_context()
        context.record_retry(
            RetryAttemptRecord(
                attempt_number=1,
                delay_s=1.0,
                message="retrying",
                failure=FailureDescriptor(reason="StatusCode: 429 (Too Many Requests)"),
            )
        )
        response = make_response(429, headers={"Retry-After": "7"})

        envelope = classifier.classify_response(response, context)

        assert envelope.retry_after_s == 7.0
        assert envelope.retry_trail is not None
        assert envelope.retry_trail.retry_count == 1
        assert envelope.headers["retry-after"] == "7"

    def test_missing_response(self, classifier: ResponseClassifier) -> None:
        """Test that a missing response still yields an envelope."""
        envelope = classifier.classify_response(None, make_context())

        assert envelope.success is False
        assert envelope.status_code is None

    def test_idempotent(self, classifier: ResponseClassifier) -> None:
        """Test that classifying the same response twice gives equal envelopes."""
        response = make_response(
            404,
            b'{"title":"Not Found","detail":"no such item"}',
            "application/problem+json",
            headers={"Retry-After": "3"},
        )
        context = make_context()
        volatile = {"timestamp", "elapsed_s"}

        first = classifier.classify_response(response, context, 0.1)
        second = classifier.classify_response(response, context, 0.2)

        assert first.model_dump(exclude=volatile) == second.model_dump(exclude=volatile)


class TestClassifyFailure:
    """Tests for ResponseClassifier.classify_failure."""

    @pytest.fixture
    def classifier(self) -> ResponseClassifier:
        """Create a classifier with default options."""
        return ResponseClassifier()

    def test_connection_refused(self, classifier: ResponseClassifier) -> None:
        """Test a transport failure wrapping an inner cause."""
        try:
            try:
                raise ConnectionRefusedError(111, "Connection refused")
            except ConnectionRefusedError as inner:
                raise httpx.ConnectError("All connection attempts failed") from inner
        except httpx.ConnectError as e:
            error = e
        failure = AttemptFailure(
            kind=FailureKind.CONNECTION, exception=error, elapsed_s=0.01
        )

        envelope = classifier.classify_failure(
            failure, "DELETE", URL, make_context(method="DELETE")
        )

        assert envelope.success is False
        assert envelope.error_category == ErrorCategory.REQUEST_ERROR
        assert envelope.error_title == "Request Error"
        assert envelope.error_type == "ConnectError | ConnectionRefusedError"
        assert envelope.error_detail is not None
        assert envelope.error_detail.startswith(
            'Error occurred while sending DELETE request to resource: "items/1"'
        )
        assert "All connection attempts failed" in envelope.error_detail
        assert "Connection refused" in envelope.error_detail
        assert envelope.exception is error
        assert envelope.method == "DELETE"
        assert envelope.url == URL
        assert envelope.redirected is False
        assert envelope.retry_trail is None

    def test_cancelled(self, classifier: ResponseClassifier) -> None:
        """Test a cancelled attempt."""
        failure = AttemptFailure(
            kind=FailureKind.CANCELLED,
            exception=RequestCancelledError(0.5),
            elapsed_s=0.5,
        )

        envelope = classifier.classify_failure(failure, "GET", URL, make_context())

        assert envelope.error_category == ErrorCategory.REQUEST_CANCELLED
        assert envelope.error_title == "Request Cancelled"
        assert envelope.error_type == "RequestCancelledError"

    def test_timeout(self, classifier: ResponseClassifier) -> None:
        """Test a timed out attempt."""
        failure = AttemptFailure(
            kind=FailureKind.TIMEOUT,
            exception=RequestTimeoutError(2.0, 2.0),
            elapsed_s=2.0,
        )

        envelope = classifier.classify_failure(failure, "GET", URL, make_context())

        assert envelope.error_category == ErrorCategory.REQUEST_TIMEOUT
        assert envelope.error_title == "Request Timed Out"
        assert envelope.error_detail is not None
        assert "did not receive response within 2 seconds" in envelope.error_detail

    def test_redirected_failure(self, classifier: ResponseClassifier) -> None:
        """Test redirect detection on the failure path."""
        failure = AttemptFailure(
            kind=FailureKind.CONNECTION,
            exception=httpx.ConnectError("refused"),
            elapsed_s=0.0,
        )
        context = make_context(original_url="https://api.example.com/old/1")

        envelope = classifier.classify_failure(failure, "GET", URL, context)

        assert envelope.redirected is True
        assert envelope.original_url == "https://api.example.com/old/1"

    def test_incomplete_envelope_is_still_returned(
        self, classifier: ResponseClassifier
    ) -> None:
        """Test that an internal error while classifying is recorded, not raised."""
        failure = AttemptFailure(
            kind="UNKNOWN",  # type: ignore[arg-type]
            exception=RuntimeError("boom"),
            elapsed_s=0.0,
        )

        envelope = classifier.classify_failure(failure, "GET", URL, make_context())

        assert envelope.success is False
        assert envelope.error_detail is not None
        assert "could not be fully generated" in envelope.error_detail
        assert isinstance(envelope.exception, RuntimeError)

    def test_serialization_failure(self, classifier: ResponseClassifier) -> None:
        """Test the envelope for a body that could not be encoded."""
        error = CodecError("Object of type object is not JSON serializable")

        envelope = classifier.serialization_failure("POST", "items", error)

        assert envelope.success is False
        assert envelope.error_category == ErrorCategory.REQUEST_SERIALIZATION
        assert envelope.error_type == "CodecError"
        assert envelope.exception is error
        assert envelope.status_code is None

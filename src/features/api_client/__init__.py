"""Resilient outbound HTTP calls returning uniform result envelopes.

This module provides API calls with:
- Per-attempt deadlines kept separate from caller cancellation
- Retries with fixed, exponential or server-directed backoff and jitter
- Redirect tracking across retries
- Response classification with pluggable known-error parsers
- Header redaction for logging
- Metrics collection for observability
"""

from src.features.api_client.cancellation import CancellationToken
from src.features.api_client.classifier import (
    ResponseClassifier,
    is_json_content_type,
    truncate,
)
from src.features.api_client.client import ApiClient
from src.features.api_client.codec import Codec, JsonCodec, flatten_form
from src.features.api_client.config import ClientConfig, SerializerOptions
from src.features.api_client.constants import (
    DEFAULT_RETRY_METHODS,
    DEFAULT_RETRY_STATUS_CODES,
    HTTP_STATUS_OK_MAX,
    HTTP_STATUS_OK_MIN,
    HTTP_STATUS_TOO_MANY_REQUESTS,
    INFINITE_TIMEOUT,
)
from src.features.api_client.error_parsers import (
    ErrorParser,
    ErrorParserChain,
    ProblemDetailsErrorParser,
)
from src.features.api_client.errors import (
    ApiClientError,
    CodecError,
    RequestCancelledError,
    RequestTimeoutError,
)
from src.features.api_client.json_tree import JsonKind, select_string, select_token
from src.features.api_client.metrics import ClientMetrics
from src.features.api_client.models import (
    AttemptContext,
    EnvelopeDraft,
    ErrorCategory,
    FailureKind,
    ResultEnvelope,
    RetryAttemptRecord,
    RetryTrail,
)
from src.features.api_client.redact import redact_headers, redact_url_credentials
from src.features.api_client.retry import RetryDecision, RetryPolicy, parse_retry_after


__all__ = [
    # Client
    "ApiClient",
    "CancellationToken",
    # Config
    "ClientConfig",
    "SerializerOptions",
    "RetryPolicy",
    # Models
    "ResultEnvelope",
    "EnvelopeDraft",
    "ErrorCategory",
    "FailureKind",
    "AttemptContext",
    "RetryTrail",
    "RetryAttemptRecord",
    "RetryDecision",
    "JsonKind",
    # Errors
    "ApiClientError",
    "CodecError",
    "RequestCancelledError",
    "RequestTimeoutError",
    # Extension points
    "Codec",
    "JsonCodec",
    "ErrorParser",
    "ErrorParserChain",
    "ProblemDetailsErrorParser",
    "ResponseClassifier",
    # Helpers
    "is_json_content_type",
    "truncate",
    "flatten_form",
    "parse_retry_after",
    "select_token",
    "select_string",
    # Constants
    "HTTP_STATUS_OK_MIN",
    "HTTP_STATUS_OK_MAX",
    "HTTP_STATUS_TOO_MANY_REQUESTS",
    "DEFAULT_RETRY_STATUS_CODES",
    "DEFAULT_RETRY_METHODS",
    "INFINITE_TIMEOUT",
    # Metrics
    "ClientMetrics",
    # Redaction
    "redact_headers",
    "redact_url_credentials",
]

"""Retry eligibility, backoff computation and the retry trail."""

import random
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Annotated

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.features.api_client.constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_JITTER_MS,
    DEFAULT_RETRY_METHODS,
    DEFAULT_RETRY_STATUS_CODES,
    DEFAULT_RETRY_WAIT_SECONDS,
    DEFAULT_TOO_MANY_REQUESTS_WAIT_SECONDS,
    HTTP_STATUS_TOO_MANY_REQUESTS,
)
from src.features.api_client.models import (
    AttemptContext,
    AttemptOutcome,
    FailureDescriptor,
    FailureKind,
    RequestExceptionInfo,
    RetryAttemptRecord,
)
from src.features.api_client.redirect import RedirectInfo


logger = structlog.get_logger()

# Failures worth another attempt; cancellations and local errors are final
RETRYABLE_FAILURE_KINDS = frozenset({FailureKind.TIMEOUT, FailureKind.CONNECTION})


class RetryDecision(str, Enum):
    """Result of evaluating a completed attempt.

    - RETRY: Wait and dispatch another attempt
    - SUCCEEDED: Terminal; the outcome is final (success or non-retryable failure)
    - RETRIES_EXHAUSTED: Terminal; the outcome was retryable but the budget is spent
    """

    RETRY = "RETRY"
    SUCCEEDED = "SUCCEEDED"
    RETRIES_EXHAUSTED = "RETRIES_EXHAUSTED"


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header value.

    Args:
        value: Header value (delta seconds or HTTP date).
        now: Reference time for HTTP dates (default: current UTC time).

    Returns:
        Seconds to wait, or None if not parseable. HTTP dates in the past
        yield negative values.
    """
    if not value:
        return None
    value = value.strip()

    # Try parsing as delta seconds
    try:
        return float(int(value))
    except ValueError:
        pass

    # Try parsing as HTTP date
    try:
        dt = parsedate_to_datetime(value)
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return (dt - (now or datetime.now(UTC))).total_seconds()


class RetryPolicy(BaseModel):
    """Configuration and decisions for retrying a logical call.

    Delays are computed in priority order:
    1. 429 with a usable Retry-After hint: max(hint, floor) plus jitter
    2. Exponential: wait_s ** retry_number, jitter bound jitter_ms * retry_number ** 3
    3. Fixed: wait_s plus up to jitter_ms of jitter
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_retries: Annotated[int, Field(ge=0, le=20)] = DEFAULT_MAX_RETRIES
    wait_s: Annotated[float, Field(ge=0.0, le=3600.0)] = DEFAULT_RETRY_WAIT_SECONDS
    jitter_ms: Annotated[int, Field(ge=0, le=60000)] = DEFAULT_RETRY_JITTER_MS
    use_exponential_wait: bool = False
    too_many_requests_wait_s: Annotated[float, Field(ge=0.0, le=3600.0)] = (
        DEFAULT_TOO_MANY_REQUESTS_WAIT_SECONDS
    )
    retry_status_codes: frozenset[int] = DEFAULT_RETRY_STATUS_CODES
    retry_methods: frozenset[str] = DEFAULT_RETRY_METHODS

    @field_validator("retry_methods")
    @classmethod
    def normalize_methods(cls, v: frozenset[str]) -> frozenset[str]:
        """Upper-case configured method names."""
        return frozenset(method.upper() for method in v)

    def is_retryable_method(self, method: str) -> bool:
        """Check if retries are enabled for an HTTP method.

        Args:
            method: HTTP method name.

        Returns:
            True if the method is in the retryable set.
        """
        return method.upper() in self.retry_methods

    def is_retry_eligible(self, method: str, outcome: AttemptOutcome) -> bool:
        """Determine if an outcome qualifies for a retry, ignoring the budget.

        Args:
            method: HTTP method of the logical call.
            outcome: Outcome of the completed attempt.

        Returns:
            True if the method is retryable and the outcome is a transient
            transport failure or a retryable status code.
        """
        if not self.is_retryable_method(method):
            return False
        if outcome.failure is not None:
            return outcome.failure.kind in RETRYABLE_FAILURE_KINDS
        return outcome.status_code in self.retry_status_codes

    def has_budget(self, retries_done: int) -> bool:
        """Check if another retry is allowed.

        Args:
            retries_done: Retries already performed for the call.

        Returns:
            True while fewer than ``max_retries`` retries were performed.
        """
        return retries_done < self.max_retries

    def evaluate(
        self, method: str, outcome: AttemptOutcome, retries_done: int
    ) -> RetryDecision:
        """Decide what happens after an attempt.

        Args:
            method: HTTP method of the logical call.
            outcome: Outcome of the completed attempt.
            retries_done: Retries already performed for the call.

        Returns:
            The retry decision.
        """
        if not self.is_retry_eligible(method, outcome):
            return RetryDecision.SUCCEEDED
        if not self.has_budget(retries_done):
            return RetryDecision.RETRIES_EXHAUSTED
        return RetryDecision.RETRY

    def backoff_components(
        self, retry_number: int, outcome: AttemptOutcome
    ) -> tuple[float, int]:
        """Compute the deterministic part of a delay and its jitter bound.

        Args:
            retry_number: 1-based number of the retry being scheduled.
            outcome: Outcome that triggered the retry.

        Returns:
            Tuple of (base delay in seconds, jitter upper bound in ms).
        """
        if outcome.status_code == HTTP_STATUS_TOO_MANY_REQUESTS:
            hint = self._retry_after_hint(outcome)
            if hint is not None and hint >= 0:
                return max(hint, self.too_many_requests_wait_s), self.jitter_ms
            return self.too_many_requests_wait_s, self.jitter_ms

        if self.use_exponential_wait:
            return self.wait_s**retry_number, self.jitter_ms * retry_number**3

        return self.wait_s, self.jitter_ms

    def get_delay_s(
        self,
        retry_number: int,
        outcome: AttemptOutcome,
        rng: random.Random | None = None,
    ) -> float:
        """Calculate the wait before the next retry, jitter included.

        Args:
            retry_number: 1-based number of the retry being scheduled.
            outcome: Outcome that triggered the retry.
            rng: Random source (default: module-level generator).

        Returns:
            Delay in seconds.
        """
        base_s, jitter_bound_ms = self.backoff_components(retry_number, outcome)

        # Add jitter to prevent thundering herd
        jitter_ms = (rng or random).randint(0, jitter_bound_ms)  # noqa: S311
        return base_s + jitter_ms / 1000.0

    @staticmethod
    def _retry_after_hint(outcome: AttemptOutcome) -> float | None:
        if outcome.response is None:
            return None
        return parse_retry_after(outcome.response.headers.get("retry-after"))


def _read_body_best_effort(outcome: AttemptOutcome) -> tuple[str | None, str | None]:
    """Return (content type, body text) of a failed response, never raising."""
    response = outcome.response
    if response is None:
        return None, None
    content_type = response.headers.get("content-type")
    try:
        body = response.text
    except Exception as e:  # noqa: BLE001
        logger.debug("retry_body_unreadable", component="retry", error=str(e))
        body = None
    return content_type, body


def build_retry_record(
    outcome: AttemptOutcome,
    retry_number: int,
    delay_s: float,
    context: AttemptContext,
    redirect: RedirectInfo,
) -> RetryAttemptRecord:
    """Describe a retry about to be performed.

    Args:
        outcome: Outcome that triggered the retry.
        retry_number: 1-based number of the retry.
        delay_s: Delay that will be awaited before the retry.
        context: Context of the logical call.
        redirect: Redirect information for the failed attempt.

    Returns:
        Record to append to the call's retry trail.
    """
    failure = outcome.failure
    response = outcome.response

    if failure is not None:
        reason = f"Exception: {failure.message}"
        exception_info = RequestExceptionInfo(
            message=failure.message,
            type=type(failure.exception).__name__,
            source=getattr(failure.exception, "source", None),
        )
    else:
        status = response.status_code if response is not None else None
        phrase = response.reason_phrase if response is not None else ""
        reason = f"StatusCode: {status} ({phrase})"
        exception_info = None

    if response is not None:
        url = str(response.url)
    elif outcome.request is not None:
        url = str(outcome.request.url)
    else:
        url = None

    marker = "redirected " if redirect.redirected else ""
    method = context.original_method or (
        outcome.request.method if outcome.request is not None else ""
    )
    message = (
        f"Failed {marker}{method} request to resource: {context.resource_path} "
        f"{marker}url: {url} failed with {reason}. "
        f"Waiting {delay_s:.3f} seconds before retrying"
    )
    if retry_number > 1:
        message = f"{message}. Retry attempts: {retry_number - 1}"

    content_type, body = _read_body_best_effort(outcome)

    return RetryAttemptRecord(
        attempt_number=retry_number,
        delay_s=delay_s,
        message=message,
        failure=FailureDescriptor(
            reason=reason,
            status_code=response.status_code if response is not None else None,
            content_type=content_type,
            response_body=body,
            request_exception=exception_info,
        ),
    )

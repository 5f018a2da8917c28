"""Data models for the API client pipeline."""

import io
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from src.features.api_client.constants import HTTP_STATUS_OK_MAX, HTTP_STATUS_OK_MIN
from src.features.api_client.json_tree import JsonKind


class FailureKind(str, Enum):
    """Classification of an attempt that produced no response.

    - TIMEOUT: The per-attempt deadline elapsed (or the transport timed out)
    - CANCELLED: The caller cancelled the attempt
    - CONNECTION: The transport could not complete the exchange
    - ERROR: Any other exception raised while sending
    """

    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    CONNECTION = "CONNECTION"
    ERROR = "ERROR"


class ErrorCategory(str, Enum):
    """Machine-readable category of a failed logical call."""

    AUTHENTICATION = "AUTHENTICATION"
    FAILURE_STATUS_CODE = "FAILURE_STATUS_CODE"
    ERROR_RETURNED_BY_SERVER = "ERROR_RETURNED_BY_SERVER"
    RESPONSE_BODY_PARSING = "RESPONSE_BODY_PARSING"
    REQUEST_ERROR = "REQUEST_ERROR"
    REQUEST_CANCELLED = "REQUEST_CANCELLED"
    REQUEST_TIMEOUT = "REQUEST_TIMEOUT"
    REQUEST_SERIALIZATION = "REQUEST_SERIALIZATION"


class RequestDescriptor(BaseModel):
    """What to send for one logical call.

    Every attempt of the call is built from the same descriptor.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    method: Annotated[str, Field(min_length=1)]
    path: Annotated[str, Field(min_length=1)]
    content: bytes | None = None
    form: dict[str, str] | None = None
    media_type: str | None = None
    timeout_s: Annotated[float, Field(gt=0)] | None = None


@dataclass(frozen=True)
class AttemptFailure:
    """Tagged failure of one attempt.

    Attributes:
        kind: What went wrong.
        exception: The exception that describes the failure.
        elapsed_s: Time spent in the attempt.
    """

    kind: FailureKind
    exception: BaseException
    elapsed_s: float

    @property
    def message(self) -> str:
        """Human-readable failure message."""
        return str(self.exception) or type(self.exception).__name__


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of a single transport attempt.

    Exactly one of ``response`` and ``failure`` is set.
    """

    request: httpx.Request | None
    response: httpx.Response | None = None
    failure: AttemptFailure | None = None
    elapsed_s: float = 0.0

    @property
    def status_code(self) -> int | None:
        """Status code of the response, if any."""
        return self.response.status_code if self.response is not None else None


class RequestExceptionInfo(BaseModel):
    """Snapshot of an exception that caused a retry."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    message: str
    type: str
    source: str | None = None


class FailureDescriptor(BaseModel):
    """Why an attempt failed, captured for postmortem debugging."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    reason: str
    status_code: int | None = None
    content_type: str | None = None
    response_body: str | None = None
    request_exception: RequestExceptionInfo | None = None


class RetryAttemptRecord(BaseModel):
    """One retry performed during a logical call."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    attempt_number: Annotated[int, Field(ge=1, description="1 is the first retry")]
    delay_s: Annotated[float, Field(ge=0)]
    message: str
    failure: FailureDescriptor


class RetryTrail(BaseModel):
    """Ordered record of every retry of a logical call."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    attempts: tuple[RetryAttemptRecord, ...] = ()

    @property
    def retry_count(self) -> int:
        """Number of retries performed."""
        return len(self.attempts)


@dataclass
class AttemptContext:
    """Mutable state of one logical call, carried across its attempts.

    Owned by a single call; never shared between concurrent calls.
    """

    resource_path: str
    original_url: str | None = None
    original_method: str | None = None
    _records: list[RetryAttemptRecord] = field(
        default_factory=list, init=False, repr=False
    )

    @property
    def retries_performed(self) -> int:
        """Number of retries recorded so far."""
        return len(self._records)

    def record_retry(self, record: RetryAttemptRecord) -> None:
        """Append a retry record.

        Args:
            record: Record for the retry about to be performed.
        """
        self._records.append(record)

    def snapshot(self) -> RetryTrail | None:
        """Freeze the recorded retries.

        Returns:
            The retry trail, or None when no retry happened.
        """
        if not self._records:
            return None
        return RetryTrail(attempts=tuple(self._records))


class ResultEnvelope(BaseModel):
    """Uniform result of a logical call, returned for success and failure alike."""

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    success: bool
    resource: str
    url: str | None = None
    original_url: str | None = None
    method: str | None = None
    original_method: str | None = None
    redirected: bool = False
    status_code: int | None = None
    status_text: str | None = None
    content_type: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    data: Any = None
    data_kind: JsonKind | None = None
    body: str | None = None
    body_stream: io.BytesIO | None = None
    body_parsing_failed: bool = False
    error_category: ErrorCategory | None = None
    error_title: str | None = None
    error_type: str | None = None
    error_detail: str | None = None
    error_instance: str | None = None
    retry_trail: RetryTrail | None = None
    retry_after_s: float | None = None
    exception: BaseException | None = None
    timestamp: datetime
    elapsed_s: float = 0.0

    @property
    def is_success_status(self) -> bool:
        """Check if a 2xx response was received."""
        return (
            self.status_code is not None
            and HTTP_STATUS_OK_MIN <= self.status_code < HTTP_STATUS_OK_MAX
        )

    @property
    def error_text(self) -> str | None:
        """Multi-line summary of the error fields, or None on success."""
        lines = []
        if self.error_title:
            lines.append(self.error_title)
        if self.error_type:
            lines.append(f"ErrorType: {self.error_type}")
        if self.error_detail:
            lines.append(f"ErrorDetail: {self.error_detail}")
        if self.error_instance:
            lines.append(f"ErrorInstance: {self.error_instance}")
        if not lines:
            return None
        return "\n".join([f"Resource: {self.resource}", *lines])


@dataclass
class EnvelopeDraft:
    """Mutable envelope under construction.

    The classifier and error parsers fill this in; ``to_envelope`` freezes it.
    """

    success: bool
    resource: str
    timestamp: datetime
    url: str | None = None
    original_url: str | None = None
    method: str | None = None
    original_method: str | None = None
    redirected: bool = False
    status_code: int | None = None
    status_text: str | None = None
    content_type: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    data: Any = None
    data_kind: JsonKind | None = None
    body: str | None = None
    body_stream: io.BytesIO | None = None
    body_parsing_failed: bool = False
    error_category: ErrorCategory | None = None
    error_title: str | None = None
    error_type: str | None = None
    error_detail: str | None = None
    error_instance: str | None = None
    retry_trail: RetryTrail | None = None
    retry_after_s: float | None = None
    exception: BaseException | None = None
    elapsed_s: float = 0.0

    def to_envelope(self) -> ResultEnvelope:
        """Freeze the draft into a result envelope."""
        return ResultEnvelope(
            success=self.success,
            resource=self.resource,
            url=self.url,
            original_url=self.original_url,
            method=self.method,
            original_method=self.original_method,
            redirected=self.redirected,
            status_code=self.status_code,
            status_text=self.status_text,
            content_type=self.content_type,
            headers=dict(self.headers),
            data=self.data,
            data_kind=self.data_kind,
            body=self.body,
            body_stream=self.body_stream,
            body_parsing_failed=self.body_parsing_failed,
            error_category=self.error_category,
            error_title=self.error_title,
            error_type=self.error_type,
            error_detail=self.error_detail,
            error_instance=self.error_instance,
            retry_trail=self.retry_trail,
            retry_after_s=self.retry_after_s,
            exception=self.exception,
            timestamp=self.timestamp,
            elapsed_s=self.elapsed_s,
        )

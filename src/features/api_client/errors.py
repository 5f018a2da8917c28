"""Exception types for the API client pipeline.

These are raised internally and captured into result envelopes. Only
contract violations escape to callers, as ``ValueError``.
"""


class ApiClientError(Exception):
    """Base class for API client errors."""


class RequestTimeoutError(ApiClientError):
    """A single attempt did not complete before its deadline.

    Attributes:
        timeout_s: Deadline that was applied, in seconds.
        elapsed_s: Time spent waiting before the deadline fired.
        source: Component that produced the timeout.
    """

    def __init__(self, timeout_s: float, elapsed_s: float) -> None:
        super().__init__(
            f"Request timed out, did not receive response within {timeout_s:g} seconds"
        )
        self.timeout_s = timeout_s
        self.elapsed_s = elapsed_s
        self.source = "timeout_guard"


class RequestCancelledError(ApiClientError):
    """The caller cancelled an attempt before it completed."""

    def __init__(self, elapsed_s: float) -> None:
        super().__init__(f"Request was cancelled by the caller after {elapsed_s:.3f} seconds")
        self.elapsed_s = elapsed_s
        self.source = "cancellation_token"


class CodecError(ApiClientError):
    """Raised when a value cannot be serialized or a payload cannot be decoded."""

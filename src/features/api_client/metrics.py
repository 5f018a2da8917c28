"""Metrics collection for the API client."""

from dataclasses import dataclass, field
from typing import ClassVar

from src.features.api_client.models import ErrorCategory


@dataclass
class ClientMetrics:
    """Metrics for API client calls.

    Singleton class that tracks call-related metrics including
    response status counts, retries, failures, cancellations and timeouts.
    """

    api_responses_total: dict[int, int] = field(default_factory=dict)
    api_retry_total: int = 0
    api_failures_total: dict[str, int] = field(default_factory=dict)
    api_cancelled_total: int = 0
    api_timeout_total: int = 0
    api_duration_ms_total: float = 0.0
    api_call_count: int = 0

    _instance: ClassVar["ClientMetrics | None"] = None

    @classmethod
    def get_instance(cls) -> "ClientMetrics":
        """Get singleton metrics instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset metrics (primarily for testing)."""
        cls._instance = None

    def record_call(self, status_code: int | None, duration_ms: float) -> None:
        """Record a completed logical call.

        Args:
            status_code: Final HTTP status code, or None if no response.
            duration_ms: Total duration of the call in milliseconds.
        """
        if status_code is not None:
            self.api_responses_total[status_code] = (
                self.api_responses_total.get(status_code, 0) + 1
            )
        self.api_duration_ms_total += duration_ms
        self.api_call_count += 1

    def record_retry(self) -> None:
        """Record a retry attempt."""
        self.api_retry_total += 1

    def record_failure(self, category: ErrorCategory) -> None:
        """Record a failed logical call.

        Args:
            category: Error category of the envelope.
        """
        key = category.value
        self.api_failures_total[key] = self.api_failures_total.get(key, 0) + 1
        if category == ErrorCategory.REQUEST_CANCELLED:
            self.api_cancelled_total += 1
        elif category == ErrorCategory.REQUEST_TIMEOUT:
            self.api_timeout_total += 1

    def to_dict(self) -> dict[str, int | float | dict[str, int] | dict[int, int]]:
        """Convert metrics to dictionary.

        Returns:
            Dictionary of metric name to value.
        """
        return {
            "api_responses_total": dict(self.api_responses_total),
            "api_retry_total": self.api_retry_total,
            "api_failures_total": dict(self.api_failures_total),
            "api_cancelled_total": self.api_cancelled_total,
            "api_timeout_total": self.api_timeout_total,
            "api_duration_ms_total": self.api_duration_ms_total,
            "api_call_count": self.api_call_count,
        }

    @property
    def avg_duration_ms(self) -> float:
        """Calculate average call duration.

        Returns:
            Average duration in milliseconds.
        """
        if self.api_call_count == 0:
            return 0.0
        return self.api_duration_ms_total / self.api_call_count

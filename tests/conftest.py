"""Shared fixtures."""

from collections.abc import Generator

import pytest

from src.features.api_client.metrics import ClientMetrics


@pytest.fixture(autouse=True)
def reset_client_metrics() -> Generator[None, None, None]:
    """Start every test with fresh client metrics."""
    ClientMetrics.reset()
    yield
    ClientMetrics.reset()

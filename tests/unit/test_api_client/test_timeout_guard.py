"""Unit tests for the per-attempt timeout and cancellation guard."""

import asyncio
import math

import httpx
import pytest

from src.features.api_client.cancellation import CancellationToken
from src.features.api_client.errors import RequestCancelledError, RequestTimeoutError
from src.features.api_client.models import AttemptContext, FailureKind
from src.features.api_client.timeout import TimeoutGuard, classify_exception


URL = "https://api.example.com/items"


def make_request() -> httpx.Request:
    """Create a GET request for the test URL."""
    return httpx.Request("GET", URL)


def delayed_send(delay_s: float, status_code: int = 200):
    """Create a send callable that responds after a delay."""

    async def send(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(delay_s)
        return httpx.Response(status_code, request=request)

    return send


class TestClassifyException:
    """Tests for transport exception tagging."""

    def test_cancellation(self) -> None:
        """Test cancellation signals."""
        assert classify_exception(RequestCancelledError(0.1)) == FailureKind.CANCELLED
        assert classify_exception(asyncio.CancelledError()) == FailureKind.CANCELLED

    def test_timeouts(self) -> None:
        """Test guard and transport timeouts."""
        assert classify_exception(RequestTimeoutError(1.0, 1.0)) == FailureKind.TIMEOUT
        assert classify_exception(httpx.ReadTimeout("slow")) == FailureKind.TIMEOUT
        assert classify_exception(httpx.ConnectTimeout("slow")) == FailureKind.TIMEOUT

    def test_connection_failures(self) -> None:
        """Test transport failures other than timeouts."""
        assert classify_exception(httpx.ConnectError("refused")) == FailureKind.CONNECTION
        assert classify_exception(httpx.RemoteProtocolError("reset")) == (
            FailureKind.CONNECTION
        )

    def test_other_errors(self) -> None:
        """Test local errors."""
        assert classify_exception(ValueError("bad")) == FailureKind.ERROR


class TestTimeoutGuard:
    """Tests for TimeoutGuard.run."""

    async def test_response_passes_through(self) -> None:
        """Test that a completed send yields its response."""
        guard = TimeoutGuard(default_timeout_s=1.0)

        outcome = await guard.run(make_request(), delayed_send(0, 204))

        assert outcome.failure is None
        assert outcome.response is not None
        assert outcome.status_code == 204

    async def test_deadline_yields_timeout(self) -> None:
        """Test that an elapsed deadline is reported as a timeout."""
        guard = TimeoutGuard(default_timeout_s=0.05)

        outcome = await guard.run(make_request(), delayed_send(5.0))

        assert outcome.response is None
        assert outcome.failure is not None
        assert outcome.failure.kind == FailureKind.TIMEOUT
        exc = outcome.failure.exception
        assert isinstance(exc, RequestTimeoutError)
        assert exc.timeout_s == 0.05
        assert exc.elapsed_s > 0
        assert exc.source == "timeout_guard"

    async def test_override_timeout(self) -> None:
        """Test that a per-attempt override replaces the default."""
        guard = TimeoutGuard(default_timeout_s=10.0)

        outcome = await guard.run(make_request(), delayed_send(5.0), timeout_s=0.02)

        assert outcome.failure is not None
        assert outcome.failure.kind == FailureKind.TIMEOUT

    async def test_token_cancellation_is_not_timeout(self) -> None:
        """Test that a fired token yields a cancelled outcome."""
        guard = TimeoutGuard(default_timeout_s=5.0)
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel)

        outcome = await guard.run(make_request(), delayed_send(5.0), tokens=[token])

        assert outcome.failure is not None
        assert outcome.failure.kind == FailureKind.CANCELLED
        assert isinstance(outcome.failure.exception, RequestCancelledError)

    async def test_already_cancelled_token_skips_send(self) -> None:
        """Test that a cancelled token prevents the send."""
        guard = TimeoutGuard(default_timeout_s=5.0)
        token = CancellationToken()
        token.cancel()
        calls: list[httpx.Request] = []

        async def send(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, request=request)

        outcome = await guard.run(make_request(), send, tokens=[token])

        assert calls == []
        assert outcome.failure is not None
        assert outcome.failure.kind == FailureKind.CANCELLED

    async def test_transport_exception_passes_through(self) -> None:
        """Test that a transport exception is tagged but not replaced."""
        guard = TimeoutGuard(default_timeout_s=5.0)
        error = httpx.ConnectError("Connection refused")

        async def send(request: httpx.Request) -> httpx.Response:
            raise error

        outcome = await guard.run(make_request(), send)

        assert outcome.failure is not None
        assert outcome.failure.kind == FailureKind.CONNECTION
        assert outcome.failure.exception is error

    async def test_infinite_timeout(self) -> None:
        """Test that an infinite timeout never fires."""
        guard = TimeoutGuard(default_timeout_s=math.inf)

        outcome = await guard.run(make_request(), delayed_send(0.02))

        assert outcome.failure is None
        assert outcome.status_code == 200

    async def test_each_attempt_gets_fresh_deadline(self) -> None:
        """Test that consecutive attempts do not share a deadline."""
        guard = TimeoutGuard(default_timeout_s=0.2)
        send = delayed_send(0.12)

        first = await guard.run(make_request(), send)
        second = await guard.run(make_request(), send)

        assert first.failure is None
        assert second.failure is None

    async def test_caller_cancellation_propagates(self) -> None:
        """Test that cancelling the calling task is not swallowed."""
        guard = TimeoutGuard(default_timeout_s=5.0)
        task = asyncio.ensure_future(guard.run(make_request(), delayed_send(5.0)))
        await asyncio.sleep(0.01)

        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

    async def test_stamps_original_request(self) -> None:
        """Test that the first attempt records the original URL and method."""
        guard = TimeoutGuard(default_timeout_s=1.0)
        context = AttemptContext(resource_path="items")

        await guard.run(make_request(), delayed_send(0), context=context)

        assert context.original_url == URL
        assert context.original_method == "GET"

    async def test_does_not_restamp_original(self) -> None:
        """Test that later attempts keep the first original URL."""
        guard = TimeoutGuard(default_timeout_s=1.0)
        context = AttemptContext(
            resource_path="items",
            original_url="https://old.example.com/items",
            original_method="GET",
        )

        await guard.run(httpx.Request("POST", URL), delayed_send(0), context=context)

        assert context.original_url == "https://old.example.com/items"
        assert context.original_method == "GET"

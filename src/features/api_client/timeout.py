"""Per-attempt deadline and cancellation guard."""

import asyncio
import math
import time
from collections.abc import Awaitable, Callable, Sequence

import httpx
import structlog

from src.features.api_client.cancellation import CancellationToken
from src.features.api_client.errors import RequestCancelledError, RequestTimeoutError
from src.features.api_client.models import (
    AttemptContext,
    AttemptFailure,
    AttemptOutcome,
    FailureKind,
)
from src.features.api_client.redirect import stamp_original


logger = structlog.get_logger()


def classify_exception(exc: BaseException) -> FailureKind:
    """Tag an exception raised by the transport.

    Args:
        exc: Exception raised while sending.

    Returns:
        Failure kind for retry decisions and classification.
    """
    if isinstance(exc, RequestCancelledError | asyncio.CancelledError):
        return FailureKind.CANCELLED
    if isinstance(exc, RequestTimeoutError | httpx.TimeoutException):
        return FailureKind.TIMEOUT
    if isinstance(exc, httpx.TransportError):
        return FailureKind.CONNECTION
    return FailureKind.ERROR


class TimeoutGuard:
    """Runs one attempt against a deadline and the caller's cancellation tokens.

    Whichever finishes first decides the outcome:
    - the send completes: its response, or its exception unchanged
    - a token fires: a CANCELLED failure
    - the deadline elapses: a TIMEOUT failure

    Every attempt gets its own deadline, so a previous attempt's timer can
    never cut a later attempt short.
    """

    def __init__(self, default_timeout_s: float) -> None:
        """Initialize the guard.

        Args:
            default_timeout_s: Deadline used when an attempt has no override.
                ``math.inf`` disables the deadline.
        """
        self._default_timeout_s = default_timeout_s
        self._log = logger.bind(component="timeout_guard")

    async def run(
        self,
        request: httpx.Request,
        send: Callable[[httpx.Request], Awaitable[httpx.Response]],
        timeout_s: float | None = None,
        tokens: Sequence[CancellationToken] = (),
        context: AttemptContext | None = None,
    ) -> AttemptOutcome:
        """Execute one attempt.

        The first attempt of a call also stamps the original URL and method
        onto ``context``.

        Args:
            request: Request to send.
            send: Transport call that sends the request.
            timeout_s: Deadline override for this attempt.
            tokens: Cancellation tokens to watch.
            context: Context of the logical call, if tracked.

        Returns:
            Outcome of the attempt. Never raises for attempt failures.

        Raises:
            asyncio.CancelledError: If the task running the guard is cancelled.
        """
        deadline = self._default_timeout_s if timeout_s is None else timeout_s
        started = time.perf_counter()

        if context is not None:
            stamp_original(context, str(request.url), request.method)

        if any(token.is_cancelled for token in tokens):
            return self._cancelled(request, started)

        send_task = asyncio.ensure_future(send(request))
        watchers = [asyncio.ensure_future(token.wait()) for token in tokens]

        try:
            done, _ = await asyncio.wait(
                {send_task, *watchers},
                timeout=None if math.isinf(deadline) else deadline,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            send_task.cancel()
            for watcher in watchers:
                watcher.cancel()
            raise

        for watcher in watchers:
            watcher.cancel()

        if send_task in done:
            return self._completed(request, send_task, started)

        await self._abandon(send_task)

        if any(token.is_cancelled for token in tokens):
            return self._cancelled(request, started)

        elapsed_s = time.perf_counter() - started
        self._log.warning(
            "attempt_timed_out",
            method=request.method,
            url=str(request.url),
            timeout_s=deadline,
            elapsed_s=round(elapsed_s, 3),
        )
        return AttemptOutcome(
            request=request,
            failure=AttemptFailure(
                kind=FailureKind.TIMEOUT,
                exception=RequestTimeoutError(deadline, elapsed_s),
                elapsed_s=elapsed_s,
            ),
            elapsed_s=elapsed_s,
        )

    def _completed(
        self,
        request: httpx.Request,
        send_task: "asyncio.Future[httpx.Response]",
        started: float,
    ) -> AttemptOutcome:
        elapsed_s = time.perf_counter() - started
        if send_task.cancelled():
            return self._cancelled(request, started)

        exc = send_task.exception()
        if exc is None:
            return AttemptOutcome(
                request=request, response=send_task.result(), elapsed_s=elapsed_s
            )

        kind = classify_exception(exc)
        self._log.debug(
            "attempt_failed",
            method=request.method,
            url=str(request.url),
            failure_kind=kind.value,
            error=str(exc),
        )
        return AttemptOutcome(
            request=request,
            failure=AttemptFailure(kind=kind, exception=exc, elapsed_s=elapsed_s),
            elapsed_s=elapsed_s,
        )

    def _cancelled(self, request: httpx.Request, started: float) -> AttemptOutcome:
        elapsed_s = time.perf_counter() - started
        self._log.info(
            "attempt_cancelled",
            method=request.method,
            url=str(request.url),
            elapsed_s=round(elapsed_s, 3),
        )
        return AttemptOutcome(
            request=request,
            failure=AttemptFailure(
                kind=FailureKind.CANCELLED,
                exception=RequestCancelledError(elapsed_s),
                elapsed_s=elapsed_s,
            ),
            elapsed_s=elapsed_s,
        )

    @staticmethod
    async def _abandon(send_task: "asyncio.Future[httpx.Response]") -> None:
        """Cancel a losing send and wait for it to unwind."""
        send_task.cancel()
        await asyncio.wait({send_task})
        if not send_task.cancelled():
            # Retrieve the result so the loop does not report it as unhandled
            send_task.exception()

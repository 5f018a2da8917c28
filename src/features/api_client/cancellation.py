"""Cooperative cancellation for in-flight API calls.

A :class:`CancellationToken` is handed to one or more calls. Setting it
makes every in-flight attempt that watches it finish as *cancelled*,
which the pipeline reports separately from a timeout.

Usage::

    token = CancellationToken()
    task = asyncio.create_task(client.get("/items", cancel_token=token))
    token.cancel()
    envelope = await task   # envelope.error_category is REQUEST_CANCELLED
"""

import asyncio

import structlog


logger = structlog.get_logger()


class CancellationToken:
    """Cancellation signal shared between a caller and its calls."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        """Check whether cancellation was requested."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation of every call watching this token."""
        if not self._event.is_set():
            logger.info("cancellation_requested", component="api_client")
        self._event.set()

    async def wait(self) -> None:
        """Wait until cancellation is requested."""
        await self._event.wait()

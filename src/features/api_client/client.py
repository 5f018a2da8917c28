"""API client with retries, timeouts, redirect tracking and result envelopes."""

import asyncio
import random
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from types import TracebackType

import httpx
import structlog
from structlog.contextvars import bound_contextvars

from src.features.api_client.cancellation import CancellationToken
from src.features.api_client.classifier import ResponseClassifier
from src.features.api_client.codec import Codec, flatten_form
from src.features.api_client.config import ClientConfig
from src.features.api_client.constants import (
    MEDIA_TYPE_JSON,
    MEDIA_TYPE_OCTET_STREAM,
    MEDIA_TYPE_TEXT,
)
from src.features.api_client.error_parsers import ErrorParser, ErrorParserChain
from src.features.api_client.errors import CodecError, RequestCancelledError
from src.features.api_client.metrics import ClientMetrics
from src.features.api_client.models import (
    AttemptContext,
    AttemptFailure,
    AttemptOutcome,
    FailureKind,
    RequestDescriptor,
    ResultEnvelope,
)
from src.features.api_client.redact import redact_headers, redact_url_credentials
from src.features.api_client.redirect import RedirectTracker
from src.features.api_client.retry import RetryDecision, build_retry_record
from src.features.api_client.state_machine import CallStateMachine
from src.features.api_client.timeout import TimeoutGuard


logger = structlog.get_logger()

Sleeper = Callable[[float], Awaitable[None]]


class ApiClient:
    """Client for one remote API that never raises for ordinary failures.

    Every call returns a :class:`ResultEnvelope` describing the outcome.
    Each logical call provides:
    - A fresh deadline per attempt, separate from caller cancellation
    - Retries for eligible methods, statuses and transport failures
    - Backoff honoring Retry-After on 429 responses
    - Redirect detection across attempts
    - A retry trail recording every retry performed

    Only contract violations (an empty method or path, an invalid timeout)
    raise ``ValueError``, before any network activity.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        http_client: httpx.AsyncClient | None = None,
        error_parsers: Sequence[ErrorParser] = (),
        codec: Codec | None = None,
        sleep: Sleeper = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the API client.

        Args:
            config: Client configuration.
            transport: Transport for the internally created httpx client.
            http_client: Externally owned httpx client to use instead.
            error_parsers: Known-error parsers tried before problem details.
            codec: Codec for request and response bodies.
            sleep: Coroutine used to wait between attempts.
            rng: Random source for retry jitter.

        Raises:
            ValueError: If both ``transport`` and ``http_client`` are given.
        """
        if transport is not None and http_client is not None:
            msg = "Pass either transport or http_client, not both"
            raise ValueError(msg)

        self._config = config
        self._policy = config.retry_policy
        self._codec = codec or config.serializer.build_codec()
        self._guard = TimeoutGuard(config.request_timeout_s)
        self._redirects = RedirectTracker()
        self._classifier = ResponseClassifier(
            error_parsers=ErrorParserChain(error_parsers),
            codec=self._codec,
            always_populate_response_body=config.always_populate_response_body,
            populate_response_body_on_parsing_error=(
                config.populate_response_body_on_parsing_error
            ),
            error_preview_length=config.error_preview_length,
        )
        self._sleep = sleep
        self._rng = rng
        self._metrics = ClientMetrics.get_instance()
        self._owns_http_client = http_client is None
        self._http = http_client or self._build_http_client(transport)

        self.cancellation = CancellationToken()
        self._request_count = 0
        self._pending_request_count = 0
        self._last_request_at: datetime | None = None

        self._log = logger.bind(component="api_client", base_url=config.base_url)

        if config.basic_auth_username is not None:
            self.set_basic_auth(
                config.basic_auth_username, config.basic_auth_password or ""
            )
        if config.bearer_token is not None:
            self.set_bearer_token(config.bearer_token)
        if config.cookie is not None:
            self.set_cookie(config.cookie)

    def _build_http_client(
        self, transport: httpx.AsyncBaseTransport | None
    ) -> httpx.AsyncClient:
        headers = {
            "Accept": MEDIA_TYPE_JSON,
            "User-Agent": self._config.user_agent,
            **self._config.default_headers,
        }
        # Deadlines are enforced per attempt by the timeout guard
        return httpx.AsyncClient(
            base_url=self._config.base_url,
            headers=headers,
            timeout=None,
            follow_redirects=self._config.allow_auto_redirect,
            verify=not self._config.ignore_server_certificate_errors,
            transport=transport,
        )

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying httpx client if this client created it."""
        if self._owns_http_client:
            await self._http.aclose()

    @property
    def config(self) -> ClientConfig:
        """Get the client configuration."""
        return self._config

    @property
    def request_count(self) -> int:
        """Number of logical calls started by this client."""
        return self._request_count

    @property
    def pending_request_count(self) -> int:
        """Number of logical calls currently in flight."""
        return self._pending_request_count

    @property
    def last_request_at(self) -> datetime | None:
        """When the most recent logical call started."""
        return self._last_request_at

    # Credentials

    def set_basic_auth(self, username: str, password: str) -> None:
        """Authenticate every request with HTTP basic auth.

        Replaces any bearer token.

        Args:
            username: User name.
            password: Password.
        """
        self._http.headers.pop("Authorization", None)
        self._http.auth = httpx.BasicAuth(username, password)
        self._log.debug("authorization_set", scheme="basic")

    def set_bearer_token(self, token: str) -> None:
        """Authenticate every request with a bearer token.

        Replaces any basic auth credentials.

        Args:
            token: Bearer token.
        """
        self._http.auth = None
        self._http.headers["Authorization"] = f"Bearer {token}"
        self._log.debug("authorization_set", scheme="bearer")

    def clear_authorization(self) -> None:
        """Remove any configured credentials."""
        self._http.auth = None
        self._http.headers.pop("Authorization", None)
        self._log.debug("authorization_cleared")

    def set_cookie(self, cookie: str) -> None:
        """Send a Cookie header with every request.

        Args:
            cookie: Raw Cookie header value.
        """
        self._http.headers["Cookie"] = cookie

    def clear_cookie(self) -> None:
        """Stop sending the Cookie header."""
        self._http.headers.pop("Cookie", None)

    # Call surface

    async def get(
        self,
        path: str,
        delay_s: float | None = None,
        *,
        timeout_s: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ResultEnvelope:
        """Send a GET request.

        Args:
            path: Resource path, relative to the base URL.
            delay_s: Optional wait before the first attempt.
            timeout_s: Per-attempt deadline override.
            cancel_token: Token that cancels this call.

        Returns:
            Result envelope of the call.
        """
        return await self.send(
            "GET", path, delay_s=delay_s, timeout_s=timeout_s, cancel_token=cancel_token
        )

    async def post(
        self,
        path: str,
        body: object,
        delay_s: float | None = None,
        *,
        timeout_s: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ResultEnvelope:
        """Send a POST request with an encoded body.

        Args:
            path: Resource path, relative to the base URL.
            body: Body to encode.
            delay_s: Optional wait before the first attempt.
            timeout_s: Per-attempt deadline override.
            cancel_token: Token that cancels this call.

        Returns:
            Result envelope of the call.
        """
        return await self.send(
            "POST",
            path,
            body,
            delay_s=delay_s,
            timeout_s=timeout_s,
            cancel_token=cancel_token,
        )

    async def post_form(
        self,
        path: str,
        fields: object,
        delay_s: float | None = None,
        *,
        timeout_s: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ResultEnvelope:
        """Send a POST request with an ``application/x-www-form-urlencoded`` body.

        Args:
            path: Resource path, relative to the base URL.
            fields: Object flattened into form fields (``a.b``, ``items[0]``).
            delay_s: Optional wait before the first attempt.
            timeout_s: Per-attempt deadline override.
            cancel_token: Token that cancels this call.

        Returns:
            Result envelope of the call.
        """
        return await self.send(
            "POST",
            path,
            form=fields,
            delay_s=delay_s,
            timeout_s=timeout_s,
            cancel_token=cancel_token,
        )

    async def put(
        self,
        path: str,
        body: object,
        delay_s: float | None = None,
        *,
        timeout_s: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ResultEnvelope:
        """Send a PUT request with an encoded body."""
        return await self.send(
            "PUT",
            path,
            body,
            delay_s=delay_s,
            timeout_s=timeout_s,
            cancel_token=cancel_token,
        )

    async def delete(
        self,
        path: str,
        delay_s: float | None = None,
        *,
        timeout_s: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ResultEnvelope:
        """Send a DELETE request."""
        return await self.send(
            "DELETE",
            path,
            delay_s=delay_s,
            timeout_s=timeout_s,
            cancel_token=cancel_token,
        )

    async def send_string(
        self,
        method: str,
        path: str,
        text: str,
        media_type: str = MEDIA_TYPE_TEXT,
        *,
        delay_s: float | None = None,
        timeout_s: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ResultEnvelope:
        """Send text content as-is with the given media type."""
        return await self.send(
            method,
            path,
            content=text,
            media_type=media_type,
            delay_s=delay_s,
            timeout_s=timeout_s,
            cancel_token=cancel_token,
        )

    async def send(
        self,
        method: str,
        path: str,
        body: object = None,
        *,
        content: bytes | str | None = None,
        form: object = None,
        media_type: str | None = None,
        delay_s: float | None = None,
        timeout_s: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ResultEnvelope:
        """Send a request and classify its outcome.

        ``body`` is encoded before sending: text as ``text/plain``, bytes as
        ``application/octet-stream`` and anything else as JSON through the
        codec. ``content`` is sent unchanged. ``form`` goes through the codec
        and is then flattened into ``application/x-www-form-urlencoded``
        fields.

        Args:
            method: HTTP method.
            path: Resource path, relative to the base URL.
            body: Object to encode as the request body.
            content: Raw request body.
            form: Object to send as form fields.
            media_type: Content type of the body, overriding the default.
            delay_s: Optional wait before the first attempt.
            timeout_s: Per-attempt deadline override; ``math.inf`` disables it.
            cancel_token: Token that cancels this call.

        Returns:
            Result envelope of the call.

        Raises:
            ValueError: If method or path is empty, more than one of body,
                content and form is given, or the timeout is not positive.
        """
        if not method or not method.strip():
            msg = "method must not be empty"
            raise ValueError(msg)
        if not path:
            msg = "path must not be empty"
            raise ValueError(msg)
        if sum(part is not None for part in (body, content, form)) > 1:
            msg = "Pass only one of body, content or form"
            raise ValueError(msg)

        method = method.strip().upper()
        started = time.perf_counter()

        fields: dict[str, str] | None = None
        try:
            if body is not None:
                content, media_type = self._encode_body(body, media_type)
            elif form is not None:
                fields = self._encode_form(form)
        except CodecError as e:
            envelope = self._classifier.serialization_failure(
                method, path, e, elapsed_s=time.perf_counter() - started
            )
            self._record(envelope)
            return envelope
        if isinstance(content, str):
            content = content.encode("utf-8")
            media_type = media_type or MEDIA_TYPE_TEXT

        descriptor = RequestDescriptor(
            method=method,
            path=path,
            content=content,
            form=fields,
            media_type=media_type,
            timeout_s=timeout_s,
        )
        return await self._execute(descriptor, delay_s, cancel_token, started)

    def _encode_body(
        self, body: object, media_type: str | None
    ) -> tuple[bytes, str]:
        if isinstance(body, str):
            return body.encode("utf-8"), media_type or MEDIA_TYPE_TEXT
        if isinstance(body, bytes | bytearray):
            return bytes(body), media_type or MEDIA_TYPE_OCTET_STREAM
        return self._codec.serialize(body), media_type or MEDIA_TYPE_JSON

    def _encode_form(self, form: object) -> dict[str, str]:
        # Serializer options apply to form field names too
        return flatten_form(self._codec.deserialize(self._codec.serialize(form)))

    def _build_request(self, descriptor: RequestDescriptor) -> httpx.Request:
        headers = {}
        if descriptor.media_type:
            headers["Content-Type"] = descriptor.media_type
        # httpx encodes form data and sets its content type
        return self._http.build_request(
            descriptor.method,
            descriptor.path,
            content=descriptor.content,
            data=descriptor.form,
            headers=headers,
        )

    async def _execute(
        self,
        descriptor: RequestDescriptor,
        delay_s: float | None,
        cancel_token: CancellationToken | None,
        started: float,
    ) -> ResultEnvelope:
        tokens = [self.cancellation]
        if cancel_token is not None:
            tokens.append(cancel_token)

        call_id = uuid.uuid4().hex[:12]
        context = AttemptContext(resource_path=descriptor.path)

        with bound_contextvars(call_id=call_id):
            self._request_count += 1
            self._pending_request_count += 1
            self._last_request_at = datetime.now(UTC)
            try:
                if delay_s:
                    self._log.debug("request_delayed", delay_s=delay_s)
                    if await self._wait(delay_s, tokens):
                        request = self._build_request(descriptor)
                        envelope = self._cancelled_envelope(request, context, started)
                    else:
                        envelope = await self._run_attempts(
                            descriptor, context, tokens, call_id, started
                        )
                else:
                    envelope = await self._run_attempts(
                        descriptor, context, tokens, call_id, started
                    )
            finally:
                self._pending_request_count -= 1

            self._record(envelope)
            self._log.info(
                "call_complete",
                method=descriptor.method,
                resource=descriptor.path,
                success=envelope.success,
                status_code=envelope.status_code,
                error_category=(
                    envelope.error_category.value if envelope.error_category else None
                ),
                retries=envelope.retry_trail.retry_count if envelope.retry_trail else 0,
                duration_ms=round(envelope.elapsed_s * 1000, 2),
            )
        return envelope

    async def _run_attempts(
        self,
        descriptor: RequestDescriptor,
        context: AttemptContext,
        tokens: Sequence[CancellationToken],
        call_id: str,
        started: float,
    ) -> ResultEnvelope:
        machine = CallStateMachine(call_id)

        while True:
            request = self._build_request(descriptor)
            self._log.debug(
                "request_dispatched",
                method=request.method,
                url=redact_url_credentials(str(request.url)),
                attempt=machine.attempts,
                headers=redact_headers(request.headers),
            )
            outcome = await self._guard.run(
                request,
                self._http.send,
                timeout_s=descriptor.timeout_s,
                tokens=tokens,
                context=context,
            )
            machine.to_evaluate()

            decision = self._policy.evaluate(
                descriptor.method, outcome, context.retries_performed
            )
            if decision == RetryDecision.SUCCEEDED:
                machine.to_succeeded()
                return self._classify(outcome, request, context, started)
            if decision == RetryDecision.RETRIES_EXHAUSTED:
                machine.to_retries_exhausted()
                self._log.warning(
                    "retries_exhausted",
                    method=descriptor.method,
                    resource=descriptor.path,
                    retries=context.retries_performed,
                )
                return self._classify(outcome, request, context, started)

            retry_number = context.retries_performed + 1
            delay_s = self._policy.get_delay_s(retry_number, outcome, self._rng)
            redirect = self._redirects.detect(context, _effective_url(outcome))
            record = build_retry_record(outcome, retry_number, delay_s, context, redirect)
            context.record_retry(record)
            self._metrics.record_retry()
            self._log.warning(
                "retry_scheduled",
                retry_number=retry_number,
                delay_s=round(delay_s, 3),
                max_retries=self._policy.max_retries,
                reason=record.failure.reason,
            )

            machine.to_retry_wait()
            if await self._wait(delay_s, tokens):
                machine.to_succeeded()
                return self._cancelled_envelope(request, context, started)
            machine.to_dispatch()

    def _classify(
        self,
        outcome: AttemptOutcome,
        request: httpx.Request,
        context: AttemptContext,
        started: float,
    ) -> ResultEnvelope:
        elapsed_s = time.perf_counter() - started
        if outcome.response is not None:
            return self._classifier.classify_response(outcome.response, context, elapsed_s)
        if outcome.failure is None:
            msg = "Attempt outcome has neither a response nor a failure"
            raise RuntimeError(msg)
        return self._classifier.classify_failure(
            outcome.failure, request.method, str(request.url), context, elapsed_s
        )

    def _cancelled_envelope(
        self, request: httpx.Request, context: AttemptContext, started: float
    ) -> ResultEnvelope:
        elapsed_s = time.perf_counter() - started
        failure = AttemptFailure(
            kind=FailureKind.CANCELLED,
            exception=RequestCancelledError(elapsed_s),
            elapsed_s=elapsed_s,
        )
        return self._classifier.classify_failure(
            failure, request.method, str(request.url), context, elapsed_s
        )

    async def _wait(self, delay_s: float, tokens: Sequence[CancellationToken]) -> bool:
        """Wait for ``delay_s`` unless a token fires first.

        Returns:
            True if the wait was cut short by cancellation.
        """
        if any(token.is_cancelled for token in tokens):
            return True
        if delay_s <= 0:
            return False

        sleeper = asyncio.ensure_future(self._sleep(delay_s))
        watchers = [asyncio.ensure_future(token.wait()) for token in tokens]
        try:
            await asyncio.wait({sleeper, *watchers}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, *watchers):
                task.cancel()
        return any(token.is_cancelled for token in tokens)

    def _record(self, envelope: ResultEnvelope) -> None:
        self._metrics.record_call(envelope.status_code, envelope.elapsed_s * 1000)
        if not envelope.success and envelope.error_category is not None:
            self._metrics.record_failure(envelope.error_category)


def _effective_url(outcome: AttemptOutcome) -> str | None:
    if outcome.response is not None:
        return str(outcome.response.url)
    if outcome.request is not None:
        return str(outcome.request.url)
    return None

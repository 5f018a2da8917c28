"""Redirect tracking across the attempts of a logical call."""

from dataclasses import dataclass

import structlog

from src.features.api_client.models import AttemptContext


logger = structlog.get_logger()


@dataclass(frozen=True)
class RedirectInfo:
    """Whether an attempt ended up somewhere other than originally requested."""

    redirected: bool
    original_url: str | None = None
    original_method: str | None = None


NOT_REDIRECTED = RedirectInfo(redirected=False)


def stamp_original(context: AttemptContext, url: str, method: str) -> bool:
    """Record what was originally requested.

    Only the first dispatch of a call is recorded. Once a URL is stamped,
    or once a retry has happened, later attempts leave it untouched.

    Args:
        context: Context of the logical call.
        url: Absolute URL being dispatched.
        method: HTTP method being dispatched.

    Returns:
        True if the original request was recorded by this call.
    """
    if context.original_url is not None or context.retries_performed > 0:
        return False
    context.original_url = url
    context.original_method = method
    return True


class RedirectTracker:
    """Detects divergence between the effective and the original request.

    Divergence is detected by plain string comparison of URLs, so a redirect
    followed by the transport and a retry that lands on a changed location
    are reported the same way.
    """

    def __init__(self) -> None:
        self._log = logger.bind(component="redirect_tracker")

    def detect(self, context: AttemptContext, effective_url: str | None) -> RedirectInfo:
        """Compare the effective URL of an attempt with the original one.

        Args:
            context: Context of the logical call.
            effective_url: URL the attempt actually reached.

        Returns:
            Redirect information for the envelope.
        """
        if context.original_url is None or not effective_url:
            return NOT_REDIRECTED
        if effective_url == context.original_url:
            return NOT_REDIRECTED

        self._log.warning(
            "request_redirected",
            original_url=context.original_url,
            url=effective_url,
            resource=context.resource_path,
        )
        return RedirectInfo(
            redirected=True,
            original_url=context.original_url,
            original_method=context.original_method,
        )

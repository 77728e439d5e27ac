"""
Classification of publish failures into ``ErrorKind``.

=============  ==========================================  ===========
Kind           Typical cause                               Auto-retry
=============  ==========================================  ===========
RATE_LIMITED   HTTP 429                                    yes
UNAUTHORIZED   HTTP 401/403, missing or expired credential no
TRANSIENT      timeouts, transport errors, 408/425/5xx      yes
TERMINAL       other 4xx (content rejected by platform)    no
=============  ==========================================  ===========

Anything unrecognised is treated as transient: a later attempt is cheap,
while a wrongly terminal failure silently drops a post.
"""

import asyncio

import httpx

from content_pipeline.exceptions import ExternalApiError, NotFoundError
from content_pipeline.models import ErrorKind

TRANSIENT_STATUS_CODES = frozenset({408, 425})


def classify_status(status_code: int) -> ErrorKind:
    """Map an HTTP status code to an ``ErrorKind``."""
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code in (401, 403):
        return ErrorKind.UNAUTHORIZED
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
        return ErrorKind.TRANSIENT
    if 400 <= status_code < 500:
        return ErrorKind.TERMINAL
    return ErrorKind.TRANSIENT


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception raised while publishing to an ``ErrorKind``."""
    if isinstance(exc, ExternalApiError):
        return ErrorKind(exc.kind)
    if isinstance(exc, NotFoundError):
        # No usable credential: the user has to reconnect the account
        return ErrorKind.UNAUTHORIZED
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.TRANSIENT


__all__ = ["ErrorKind", "classify_status", "classify_error"]

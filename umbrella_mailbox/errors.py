"""Error taxonomy shared by providers, the coordinator, and the API.

Every failure that leaves a component is one of the classes below.
``classify`` folds anything else (library exceptions, HTTP status
errors, timeouts) into the taxonomy; unknown errors become
:class:`FatalError` so they are never retried silently.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

import httpx

T = TypeVar("T")


class MailboxError(Exception):
    """Base class for all pipeline errors."""

    kind: str = "Fatal"
    retryable: bool = False

    def __init__(self, message: str = "", *, cause: BaseException | None = None) -> None:
        super().__init__(message or self.kind)
        self.cause = cause


class InvalidArgument(MailboxError):
    """Caller error; surfaced immediately, never retried."""

    kind = "InvalidArgument"


class NotFound(MailboxError):
    """The referenced message or attachment no longer exists."""

    kind = "NotFound"


class TransientError(MailboxError):
    """Network, timeout, or throttling failure; retry with backoff."""

    kind = "TransientError"
    retryable = True


class LeaseUnavailable(TransientError):
    """Another worker holds the ingestion lease for this mailbox."""

    kind = "LeaseUnavailable"


class PayloadTooLarge(MailboxError):
    """An attachment exceeds the configured size limit."""

    kind = "PayloadTooLarge"


class FatalError(MailboxError):
    """Authentication or configuration failure; needs an operator."""

    kind = "Fatal"


def classify(exc: BaseException) -> MailboxError:
    """Map *exc* onto the taxonomy.  Already-classified errors pass through."""
    if isinstance(exc, MailboxError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return TransientError(f"timed out: {exc}", cause=exc)
    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_status(exc.response.status_code, exc)
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return TransientError(f"network error: {exc}", cause=exc)
    return FatalError(f"unclassified error: {type(exc).__name__}: {exc}", cause=exc)


def _classify_status(status_code: int, exc: BaseException) -> MailboxError:
    if status_code in (404, 410):
        return NotFound(f"HTTP {status_code}", cause=exc)
    if status_code in (401, 403):
        return FatalError(f"HTTP {status_code}", cause=exc)
    if status_code == 413:
        return PayloadTooLarge(f"HTTP {status_code}", cause=exc)
    if status_code in (408, 429) or status_code >= 500:
        return TransientError(f"HTTP {status_code}", cause=exc)
    return InvalidArgument(f"HTTP {status_code}", cause=exc)


async def provider_call(awaitable: Awaitable[T], seconds: float) -> T:
    """Await a provider call with a deadline, classifying any failure.

    Expiry of the deadline becomes :class:`TransientError`; any other
    exception is passed through :func:`classify`.
    """
    try:
        async with asyncio.timeout(seconds):
            return await awaitable
    except MailboxError:
        raise
    except TimeoutError as exc:
        raise TransientError(f"provider call exceeded {seconds}s", cause=exc) from exc
    except Exception as exc:
        raise classify(exc) from exc

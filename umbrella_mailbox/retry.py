"""Backoff policy for ingestion cycles, built on tenacity."""

from __future__ import annotations

from collections.abc import Callable

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig
from .errors import TransientError

logger = structlog.get_logger()


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "retrying_after_transient_error",
        attempt=state.attempt_number,
        wait_seconds=round(state.next_action.sleep, 3) if state.next_action else None,
        error=str(exc) if exc else None,
    )


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (TransientError,),
    excluded_exceptions: tuple[type[BaseException], ...] = (),
) -> Callable:
    """Decorator that re-runs an async callable on transient failures.

    Attempts are capped at ``config.max_attempts`` with exponential
    waits between ``initial_wait_seconds`` and ``max_wait_seconds``.
    Anything outside *retryable_exceptions*, or listed in
    *excluded_exceptions*, is raised straight away; once attempts run
    out the last error is re-raised unchanged.

    Example::

        run = with_retry(config.retry, excluded_exceptions=(LeaseUnavailable,))(cycle)
    """
    should_retry = retry_if_exception_type(retryable_exceptions)
    if excluded_exceptions:
        should_retry = should_retry & retry_if_not_exception_type(excluded_exceptions)

    backoff = wait_exponential(
        multiplier=config.multiplier,
        min=config.initial_wait_seconds,
        max=config.max_wait_seconds,
    )
    return retry(
        retry=should_retry,
        stop=stop_after_attempt(config.max_attempts),
        wait=backoff,
        before_sleep=_log_retry,
        reraise=True,
    )

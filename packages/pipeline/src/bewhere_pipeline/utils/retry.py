"""
utils/retry.py — Fixed-delay retry for async network calls.

Uses tenacity under the hood. Each retry is logged with structlog so
transient failures are observable without failing the run.

Usage:
    from bewhere_pipeline.utils.retry import is_transient_http_error, retrying

    async for attempt in retrying(3, 1.0, retry_if=is_transient_http_error):
        with attempt:
            async with httpx.AsyncClient() as client:
                r = await client.get(url)
                r.raise_for_status()

`max_retries` counts retries after the first attempt, so the loop above
makes at most four attempts.
"""

from __future__ import annotations

from collections.abc import Callable

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

log = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429})


def is_transient_http_error(exc: BaseException) -> bool:
    """True for transport failures, 429 and 5xx responses; other 4xx are final."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status in RETRYABLE_STATUS_CODES
    return isinstance(exc, httpx.TransportError)


def _log_before_sleep(fn_name: str, max_attempts: int) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        log.warning(
            "retry_attempt",
            function=fn_name,
            attempt=state.attempt_number,
            max_attempts=max_attempts,
            next_delay_s=state.next_action.sleep if state.next_action else None,
            last_error=str(exc) if exc else None,
        )

    return before_sleep


def retrying(
    max_retries: int = 3,
    delay: float = 1.0,
    retry_on: type[Exception] | tuple[type[Exception], ...] = Exception,
    *,
    retry_if: Callable[[BaseException], bool] | None = None,
    name: str = "call",
) -> AsyncRetrying:
    """
    Build an AsyncRetrying controller for inline use.

    Args:
        max_retries: Retries after the first attempt.
        delay:       Seconds to wait between attempts.
        retry_on:    Exception type(s) that trigger a retry.
        retry_if:    Predicate deciding per exception; replaces retry_on.
        name:        Label for the retry log events.

    The last exception is re-raised once retries are exhausted.
    """
    max_attempts = max_retries + 1
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(delay),
        retry=retry_if_exception(retry_if) if retry_if else retry_if_exception_type(retry_on),
        before_sleep=_log_before_sleep(name, max_attempts),
        reraise=True,
    )

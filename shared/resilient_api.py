"""
Resilient API calls with retry logic and error classification.

Square calls are retried only for transient connectivity failures
(connection refused/reset, unreachable host, timeouts). Validation errors,
not-found responses and other Square API errors surface immediately.

Arguments are passed unchanged on every attempt, so an idempotency key
generated by the caller is reused by all retries of that attempt and Square
can deduplicate them.
"""

import asyncio
import errno
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# errno values that mean "can't reach Square right now"
TRANSIENT_ERRNOS = {
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.ETIMEDOUT,
}


def is_retryable_error(error: BaseException) -> bool:
    """
    Determine if an error is a transient connectivity failure.

    Retryable errors:
    - httpx connect/read/write/pool timeouts and network errors
    - ConnectionError and TimeoutError (asyncio and builtin)
    - OSError carrying a "can't reach" errno

    Non-retryable errors:
    - Any HTTP response from Square (4xx/5xx), including 404
    - Validation and configuration errors
    """
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True

    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True

    if isinstance(error, OSError) and error.errno in TRANSIENT_ERRNOS:
        return True

    return False


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def _log_retry(retry_state: RetryCallState, name: str) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning(
        f"{name} failed (attempt {retry_state.attempt_number}), "
        f"retrying in {delay:.2f}s: {error}"
    )


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    **kwargs: Any,
) -> T:
    """
    Await `func(*args, **kwargs)` with exponential backoff on transient errors.

    Args:
        func: Async callable to invoke
        *args: Positional arguments passed to func on every attempt
        max_retries: Retries after the first attempt (default: 3)
        initial_delay: First backoff delay in seconds (default: 1.0)
        max_delay: Cap on any single backoff delay (default: 10.0)
        **kwargs: Keyword arguments passed to func on every attempt

    Returns:
        Result of the first successful call

    Raises:
        The last exception once retries are exhausted, or the first
        non-retryable exception immediately

    Example:
        >>> booking = await call_with_retry(
        ...     client.create_booking,
        ...     idempotency_key=key,
        ...     customer_id="CUST1",
        ...     max_retries=3,
        ... )
    """
    name = getattr(func, "__name__", "call")
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=initial_delay, max=max_delay),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=lambda state: _log_retry(state, name),
        sleep=_sleep,
        reraise=True,
    )

    attempts = 0
    async for attempt in retrying:
        with attempt:
            attempts += 1
            result = await func(*args, **kwargs)
            if attempts > 1:
                logger.info(
                    f"{name} succeeded on attempt {attempts}"
                )
            return result

    raise RuntimeError("unreachable: retry loop exited without result")  # pragma: no cover

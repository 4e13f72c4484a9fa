"""
Retry utility functions with exponential backoff.
Categorizes errors as transient (retryable) or permanent (non-retryable).
"""

import asyncio
import functools
import inspect
from collections.abc import Callable
from typing import TypeVar

import httpx
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger()

T = TypeVar("T")


class TransientError(Exception):
    """Raised for transient/retryable errors (network issues, rate limits, 5xx)."""

    pass


class PermanentError(Exception):
    """Raised for permanent/non-retryable errors (4xx validation errors, auth failures)."""

    pass


def _status_code_of(exception: Exception) -> int | None:
    """Extract an HTTP status code from httpx errors or our own API errors."""
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code
    status_code = getattr(exception, "status_code", None)
    return status_code if isinstance(status_code, int) else None


def is_transient_error(exception: Exception) -> bool:
    """
    Determine if an exception represents a transient error that should be retried.

    Args:
        exception: The exception to check

    Returns:
        True if error is transient (retryable), False otherwise
    """
    # Network/connection errors are transient
    if isinstance(exception, httpx.ConnectError | httpx.TimeoutException | httpx.NetworkError):
        return True

    if isinstance(exception, TimeoutError | asyncio.TimeoutError):
        return True

    if isinstance(exception, TransientError):
        return True

    if isinstance(exception, PermanentError):
        return False

    status_code = _status_code_of(exception)
    if status_code is not None:
        # 5xx, 408 and 429 are worth another attempt
        if 500 <= status_code < 600 or status_code in (408, 429):
            return True
        return False

    # Default to non-retryable for unknown errors
    return False


def retry_with_backoff(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float = 60.0,
):
    """
    Decorator for retrying functions with exponential backoff.
    Only retries on transient errors. Works for plain and async functions.

    The original exception is re-raised once attempts are exhausted (or
    immediately for permanent errors), so callers keep seeing the API error
    type they expect.

    Args:
        max_attempts: Maximum number of attempts
        initial_delay: Initial delay in seconds
        multiplier: Multiplier for exponential backoff
        max_delay: Maximum delay in seconds

    Returns:
        Decorated function with retry logic
    """

    def build_retrying():
        return retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=multiplier, min=initial_delay, max=max_delay),
            retry=retry_if_exception_type(TransientError),
            reraise=True,
            before_sleep=_log_retry_attempt,
        )

    def retry_decorator(func: Callable[..., T]) -> Callable[..., T]:
        if inspect.iscoroutinefunction(func):

            @build_retrying()
            async def attempt_async(*args, **kwargs):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if is_transient_error(e):
                        raise TransientError(str(e)) from e
                    raise

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                try:
                    return await attempt_async(*args, **kwargs)
                except TransientError as e:
                    raise (e.__cause__ or e) from None

            return async_wrapper

        @build_retrying()
        def attempt(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if is_transient_error(e):
                    raise TransientError(str(e)) from e
                raise

        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            try:
                return attempt(*args, **kwargs)
            except TransientError as e:
                raise (e.__cause__ or e) from None

        return wrapper

    return retry_decorator


def _log_retry_attempt(retry_state: RetryCallState):
    """Log retry attempt before sleeping."""
    if retry_state.outcome is not None:
        exception = retry_state.outcome.exception()
        logger.warning(
            "Retrying after transient error",
            attempt=retry_state.attempt_number,
            exception=str(exception),
            wait_time=retry_state.next_action.sleep if retry_state.next_action else 0,
        )

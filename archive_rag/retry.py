"""Shared tenacity retry policy for provider calls.

Transient failures (rate limits, connection errors, timeouts, 5xx) are retried with
exponential backoff: ``backoff``, ``2 * backoff``, ``4 * backoff`` seconds. Anything
classified as an invalid request is re-raised on the first failure.
"""
import logging

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from archive_rag.errors import is_transient

logger = logging.getLogger(__name__)


def provider_retrying(max_retries: int, backoff: float) -> AsyncRetrying:
    """Build an AsyncRetrying controller.

    Args:
        max_retries: Retries after the first attempt.
        backoff: Base delay in seconds; 0 disables waiting (tests).

    Returns:
        AsyncRetrying: Use as ``async for attempt in ...: with attempt: ...``.
            The last exception is re-raised unchanged once the budget is spent.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=backoff, max=backoff * 4),
        retry=retry_if_exception(is_transient),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )

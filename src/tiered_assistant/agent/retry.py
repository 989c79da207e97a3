"""Retry policy with exponential backoff for capability calls."""

from __future__ import annotations

import logging

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from tiered_assistant.errors import is_retryable

logger = logging.getLogger(__name__)


def create_retry_decorator(
    max_attempts: int = 3, min_wait: float = 0.5, max_wait: float = 8.0, multiplier: float = 1.0
):
    """Build a tenacity decorator that retries rate-limit, transient and timeout errors.

    Permanent errors (bad request, auth) are raised immediately.

    Example:
        @create_retry_decorator(max_attempts=2)
        async def call_provider():
            ...
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=multiplier, min=min_wait, max=max_wait),
        retry=retry_if_exception(is_retryable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


retry_generation_call = create_retry_decorator(max_attempts=3, min_wait=1.0, max_wait=10.0)
retry_search_call = create_retry_decorator(max_attempts=3, min_wait=0.5, max_wait=5.0)

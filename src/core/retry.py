"""Retry policies for storage and payment gateway calls."""

import asyncio
import logging
from typing import Any, Callable, TypeVar

import httpx
import stripe
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.core.config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Backoff bounds (seconds)
STORAGE_MIN_WAIT_SECONDS = 0.05
STORAGE_MAX_WAIT_SECONDS = 1
GATEWAY_MIN_WAIT_SECONDS = 0.5
GATEWAY_MAX_WAIT_SECONDS = 8

# Errors where the request may not have reached the store
TRANSIENT_STORAGE_ERRORS = (httpx.TransportError,)

# Network-level gateway errors; a definitive decline or invalid request is never retried
TRANSIENT_GATEWAY_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    asyncio.TimeoutError,
)


def _log_retry(call_state: RetryCallState) -> None:
    exc = call_state.outcome.exception() if call_state.outcome else None
    logger.warning(
        "Retrying %s after attempt %d: %s",
        getattr(call_state.fn, "__name__", "call"),
        call_state.attempt_number,
        exc,
    )


def execute_with_retry(query: Any, attempts: int | None = None) -> Any:
    """Execute a Supabase query builder, retrying on transport errors.

    Each execution is a single request, so a conditional update re-sent
    after a lost response is still guarded by its filters.

    Args:
        query: A PostgREST request builder (anything with ``execute()``).
        attempts: Override for the configured attempt count.

    Returns:
        The builder's API response.
    """
    attempts = attempts or get_settings().storage_retry_attempts
    retrying = Retrying(
        retry=retry_if_exception_type(TRANSIENT_STORAGE_ERRORS),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.05, min=STORAGE_MIN_WAIT_SECONDS, max=STORAGE_MAX_WAIT_SECONDS),
        before_sleep=_log_retry,
        reraise=True,
    )
    return retrying(query.execute)


async def call_gateway_with_retry(
    fn: Callable[[], T],
    attempts: int | None = None,
    timeout_seconds: float | None = None,
) -> T:
    """Run a blocking gateway call in a thread with a timeout and backoff.

    Args:
        fn: Zero-argument callable performing one gateway request.
        attempts: Override for the configured attempt count.
        timeout_seconds: Override for the configured per-call timeout.

    Returns:
        The callable's return value.

    Raises:
        The last transient error once attempts are exhausted, or any
        non-transient error immediately.
    """
    settings = get_settings()
    attempts = attempts or settings.gateway_retry_attempts
    timeout_seconds = timeout_seconds or settings.gateway_timeout_seconds

    async def _attempt() -> T:
        return await asyncio.wait_for(asyncio.to_thread(fn), timeout=timeout_seconds)

    retrying = AsyncRetrying(
        retry=retry_if_exception_type(TRANSIENT_GATEWAY_ERRORS),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.5, min=GATEWAY_MIN_WAIT_SECONDS, max=GATEWAY_MAX_WAIT_SECONDS),
        before_sleep=_log_retry,
        reraise=True,
    )
    return await retrying(_attempt)


__all__ = [
    "TRANSIENT_GATEWAY_ERRORS",
    "TRANSIENT_STORAGE_ERRORS",
    "call_gateway_with_retry",
    "execute_with_retry",
]

"""Retry logic with exponential backoff.

This module provides:
- with_retry: explicit exponential backoff wrapper applied to every remote call
- is_retryable: default policy (network errors, HTTP 429 and 5xx)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0

# Network-related exceptions that indicate connectivity issues
NETWORK_EXCEPTIONS: tuple[type[Exception], ...] = (
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
)

RETRYABLE_STATUS_CODES = frozenset({429})


def is_retryable(exc: Exception) -> bool:
    """Check whether a failed call is worth retrying.

    Network failures and HTTP 429/5xx are transient. Any other HTTP status
    (auth, not found, bad request) is fatal for the call.
    """
    if isinstance(exc, NETWORK_EXCEPTIONS):
        return True
    status_code = getattr(exc, "status_code", None)
    if status_code is None:
        return False
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


def with_retry(
    func: Callable[[], T],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    retryable: Callable[[Exception], bool] = is_retryable,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Execute a function with exponential backoff retry.

    Args:
        func: Function to execute.
        max_retries: Maximum number of retry attempts (0 = single attempt).
        initial_backoff: Initial backoff time in seconds.
        max_backoff: Maximum backoff time in seconds.
        backoff_multiplier: Multiplier for each retry.
        retryable: Predicate deciding whether an exception is retried.
        sleep: Sleep function (injected by tests).

    Returns:
        Result of the function.

    Raises:
        The first non-retryable exception, or the last one once retries
        are exhausted.
    """
    backoff = initial_backoff

    for attempt in range(max_retries + 1):
        try:
            return func()
        except Exception as e:
            if not retryable(e):
                raise
            if attempt == max_retries:
                logger.error(f"All {max_retries} retries failed: {e}")
                raise

            logger.warning(
                f"Attempt {attempt + 1}/{max_retries + 1} failed: {e}. "
                f"Retrying in {backoff:.1f}s..."
            )
            sleep(backoff)
            backoff = min(backoff * backoff_multiplier, max_backoff)

    raise RuntimeError("Unexpected retry loop exit")

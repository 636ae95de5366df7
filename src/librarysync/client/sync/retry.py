"""Retry logic with exponential backoff.

This module provides:
- backoff_delay: Delay before a given reconnect/retry attempt
- retry_with_backoff: Simple exponential backoff retry, interruptible
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 30.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0


def backoff_delay(
    attempt: int,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
) -> float:
    """Delay before retry number ``attempt`` (1-based): 1s, 2s, 4s... capped.

    Args:
        attempt: Failed attempt count, starting at 1.
        initial_backoff: Delay after the first failure.
        max_backoff: Upper bound.
        backoff_multiplier: Growth factor per attempt.
    """
    if attempt < 1:
        return 0.0
    return min(initial_backoff * backoff_multiplier ** (attempt - 1), max_backoff)


def retry_with_backoff(
    func: Callable[[], T],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    stop_event: threading.Event | None = None,
) -> T:
    """Execute a function with exponential backoff retry.

    Args:
        func: Function to execute.
        max_retries: Maximum number of retry attempts.
        initial_backoff: Initial backoff time in seconds.
        max_backoff: Maximum backoff time in seconds.
        backoff_multiplier: Multiplier for each retry.
        retryable_exceptions: Tuple of exception types to retry on.
        stop_event: When set, waiting is interrupted and the last error raised.

    Returns:
        Result of the function.

    Raises:
        The last exception if all retries fail.
    """
    attempt = 0
    while True:
        try:
            return func()
        except retryable_exceptions as e:
            attempt += 1
            if attempt > max_retries:
                logger.error("All %d retries failed: %s", max_retries, e)
                raise

            delay = backoff_delay(attempt, initial_backoff, max_backoff, backoff_multiplier)
            logger.warning(
                "Attempt %d/%d failed: %s. Retrying in %.1fs...",
                attempt,
                max_retries + 1,
                e,
                delay,
            )
            if stop_event is not None:
                if stop_event.wait(delay):
                    raise
            else:
                time.sleep(delay)

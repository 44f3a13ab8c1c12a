"""
Retry logic with exponential backoff and jitter.

Only transient data-source failures are retried; everything else propagates
on the first attempt.
"""

import logging
import random
import time
from typing import Any, Callable, TypeVar

from challenge_awards.exceptions import TransientDataSourceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRIES = 3
BASE_DELAY = 3.0  # seconds
MAX_DELAY = 60.0  # seconds
JITTER = 0.1  # 10% random jitter


def calculate_backoff(attempt: int, base_delay: float = BASE_DELAY) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Args:
        attempt: The retry attempt number (0-indexed)
        base_delay: Delay before the first retry

    Returns:
        Delay in seconds, roughly base_delay * 2**attempt
    """
    delay = min(base_delay * (2**attempt), MAX_DELAY)
    jitter_amount = random.uniform(-JITTER * delay, JITTER * delay)
    return max(delay + jitter_amount, 0.0)


def retry_with_backoff(
    func: Callable[..., T],
    *args: Any,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """
    Call func, retrying TransientDataSourceError with backoff.

    Args:
        func: Function to call
        max_retries: Maximum number of retries after the first attempt
        base_delay: Delay before the first retry
        sleep: Sleep function (injected by tests)

    Returns:
        Result from func

    Raises:
        The last TransientDataSourceError once retries are exhausted, or any
        other exception immediately
    """
    for attempt in range(max_retries + 1):
        try:
            return func(*args, **kwargs)
        except TransientDataSourceError as e:
            if attempt == max_retries:
                logger.error(
                    f"[RETRY] All {max_retries} retries exhausted for "
                    f"{func.__name__}: {e}"
                )
                raise

            backoff = calculate_backoff(attempt, base_delay)
            logger.warning(
                f"[RETRY] Attempt {attempt + 1}/{max_retries} for {func.__name__} "
                f"after {backoff:.2f}s (error: {e})"
            )
            sleep(backoff)

    # Unreachable: the loop either returns or raises
    raise RuntimeError("Retry logic failed unexpectedly")


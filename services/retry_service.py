"""
Retry Service with Exponential Backoff
Bounded retries for calls into the external payment capability
"""

import logging
import random
import time
from typing import Any, Callable, Optional

from utils.exceptions import EscrowError

logger = logging.getLogger(__name__)


def _is_retryable(error: Exception) -> bool:
    return isinstance(error, EscrowError) and error.is_retryable


class RetryService:
    """Service for handling retries with exponential backoff"""

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self.sleep = sleep

    def retry(
        self,
        func: Callable[[], Any],
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 10.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        should_retry: Callable[[Exception], bool] = _is_retryable,
        on_attempt: Optional[Callable[[int], None]] = None,
    ) -> Any:
        """
        Retry a function with exponential backoff

        Args:
            func: Zero-argument callable to retry
            max_attempts: Maximum number of attempts
            initial_delay: Initial delay in seconds
            max_delay: Maximum delay in seconds
            exponential_base: Base for exponential backoff
            jitter: Add random jitter to prevent thundering herd
            should_retry: Predicate deciding whether a raised error is worth another attempt
            on_attempt: Called with the 1-based attempt number before each attempt
        """
        attempt = 0
        delay = initial_delay
        name = getattr(func, "__name__", repr(func))

        while True:
            attempt += 1
            if on_attempt is not None:
                on_attempt(attempt)
            try:
                return func()
            except Exception as e:
                if not should_retry(e):
                    raise
                if attempt >= max_attempts:
                    logger.error(f"Max retry attempts ({max_attempts}) reached for {name}")
                    raise

                actual_delay = delay * (0.5 + random.random()) if jitter else delay
                logger.warning(
                    f"Attempt {attempt}/{max_attempts} failed for {name}: {e}. "
                    f"Retrying in {actual_delay:.2f}s"
                )
                self.sleep(actual_delay)
                delay = min(delay * exponential_base, max_delay)


# Global retry service instance
retry_service = RetryService()

"""Retry policy with exponential backoff for provider calls."""

import random
import threading
import time
from typing import Callable, TypeVar, Optional

from terrapin.utils.errors import (
    ErrorContext,
    ProviderError,
    TransientProviderError,
    error_handler,
)
from terrapin.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

BackoffFunction = Callable[[int], float]


class RetryPolicy:
    """Exponential backoff retry policy for transient provider errors.

    Errors are first classified with the global error handler; only
    TransientProviderError is retried. Anything else propagates on the
    first attempt.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        backoff: Optional[BackoffFunction] = None,
        sleep: Optional[Callable[[float], None]] = None
    ):
        """Initialize retry policy.

        Args:
            max_attempts: Maximum number of attempts, including the first call
            base_delay: Base delay in seconds for first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
            backoff: Optional function mapping attempt number (0-indexed) to delay,
                replacing the exponential calculation
            sleep: Function used to wait between attempts. When omitted the
                policy waits on the cancel event, or with time.sleep when
                there is none. An injected function is always used, and the
                cancel event is checked once it returns.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff = backoff
        self.sleep = sleep

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        """Policy that makes exactly one attempt."""
        return cls(max_attempts=1)

    def should_retry(self, error: ProviderError, attempt: int) -> bool:
        """Determine if an error should trigger a retry.

        Args:
            error: The classified error
            attempt: Current attempt number (0-indexed)

        Returns:
            True if the error is transient and attempts remain
        """
        if attempt + 1 >= self.max_attempts:
            return False
        return isinstance(error, TransientProviderError)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before next retry.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        if self.backoff is not None:
            return max(0.0, self.backoff(attempt))

        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )

        # Up to 10% random jitter
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def call(
        self,
        func: Callable[..., T],
        *args,
        context: Optional[ErrorContext] = None,
        cancel_event: Optional[threading.Event] = None,
        **kwargs
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Function to execute
            *args: Positional arguments for the function
            context: Error context attached to classified errors
            cancel_event: When set, pending retries are abandoned
            **kwargs: Keyword arguments for the function

        Returns:
            Result of the function call

        Raises:
            ProviderError: The classified error of the last attempt
        """
        attempt = 0
        while True:
            try:
                result = func(*args, **kwargs)
                if attempt > 0:
                    logger.info(f"Operation succeeded after {attempt} retries")
                return result

            except Exception as e:
                error = error_handler.classify(e, context)

                if not self.should_retry(error, attempt):
                    if isinstance(error, TransientProviderError):
                        logger.error(f"All {self.max_attempts} attempts exhausted: {error.message}")
                    raise error from e

                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_attempts} failed: {error.message}. "
                    f"Retrying in {delay:.2f}s..."
                )

                if self._wait(delay, cancel_event):
                    logger.info("Retry abandoned: run was cancelled")
                    raise error from e

                attempt += 1

    def _wait(self, delay: float, cancel_event: Optional[threading.Event]) -> bool:
        """Wait ``delay`` seconds. Returns True if the run was cancelled meanwhile."""
        if self.sleep is not None:
            self.sleep(delay)
        elif cancel_event is not None:
            return cancel_event.wait(delay)
        else:
            time.sleep(delay)
        return cancel_event is not None and cancel_event.is_set()

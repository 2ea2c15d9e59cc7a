"""Retry helpers with exponential backoff and jitter."""

import random
import time
from typing import Any, Callable, Optional

import structlog

from utils.logging import get_logger


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 0.5,
        max_delay: float = 10.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    ) -> None:
        """Initialize retry configuration.

        Args:
            max_attempts: Total number of attempts, the first one included
            initial_delay: Delay in seconds before the first retry
            max_delay: Upper bound for a single delay in seconds
            exponential_base: Base for exponential backoff
            jitter: Whether to add up to 10% random jitter to delays
            retryable_exceptions: Exception types that trigger a retry
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions


def calculate_backoff_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate the delay before retry number ``attempt`` (0-indexed)."""
    delay = min(config.initial_delay * (config.exponential_base**attempt), config.max_delay)
    if config.jitter:
        delay += delay * 0.1 * random.random()
    return delay


def retry_sync(
    func: Callable[..., Any],
    *args: Any,
    config: Optional[RetryConfig] = None,
    logger: Optional[structlog.BoundLogger] = None,
    sleep: Optional[Callable[[float], None]] = None,
    **kwargs: Any,
) -> Any:
    """Call ``func`` and retry it on the configured exceptions.

    Args:
        func: Function to call
        *args: Positional arguments for function
        config: Retry configuration (uses defaults if None)
        logger: Optional logger instance
        sleep: Sleep function (time.sleep if None)
        **kwargs: Keyword arguments for function

    Returns:
        Function result

    Raises:
        The last exception once all attempts are exhausted
    """
    config = config or RetryConfig()
    logger = logger or get_logger("retry")
    sleep = sleep or time.sleep

    for attempt in range(config.max_attempts):
        try:
            return func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt == config.max_attempts - 1:
                logger.error(
                    "All retry attempts exhausted",
                    max_attempts=config.max_attempts,
                    error=str(e),
                )
                raise

            delay = calculate_backoff_delay(attempt, config)
            logger.warning(
                "Retry attempt failed, retrying",
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay=delay,
                error=str(e),
            )
            sleep(delay)

    raise RuntimeError("Retry logic error")

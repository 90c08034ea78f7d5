"""Base task classes with retry logic for Celery."""

import math
from typing import Any

from celery import Task

from vodpipeline.core.config import Settings


class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 300.0,
        backoff_multiplier: float = 2.0,
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt using exponential backoff.

        Args:
            attempt: The current attempt number (1-indexed).

        Returns:
            The delay in seconds, capped at max_delay.
        """
        if attempt < 1:
            return self.initial_delay

        delay = self.initial_delay * math.pow(self.backoff_multiplier, attempt - 1)
        return min(delay, self.max_delay)

    def is_exhausted(self, attempt: int) -> bool:
        """True when ``attempt`` used up the retry budget."""
        return attempt >= self.max_attempts


# Default retry configurations for different job types
RETRY_CONFIGS = {
    "transcode": RetryConfig(max_attempts=3, initial_delay=30.0, max_delay=600.0, backoff_multiplier=2),
    "catalog": RetryConfig(max_attempts=5, initial_delay=0.5, max_delay=15.0, backoff_multiplier=2),
    "storage": RetryConfig(max_attempts=3, initial_delay=2.0, max_delay=30.0, backoff_multiplier=2),
    "default": RetryConfig(max_attempts=3, initial_delay=1.0, max_delay=60.0, backoff_multiplier=2),
}


def transcode_retry_config(settings: Settings) -> RetryConfig:
    """Transcode retry budget as configured for this deployment."""
    return RetryConfig(
        max_attempts=settings.TRANSCODE_MAX_ATTEMPTS,
        initial_delay=settings.TRANSCODE_RETRY_INITIAL_DELAY,
        max_delay=settings.TRANSCODE_RETRY_MAX_DELAY,
        backoff_multiplier=settings.TRANSCODE_RETRY_BACKOFF,
    )


class BaseTaskWithRetry(Task):
    """Base Celery task with exponential backoff retry logic."""

    abstract = True
    retry_config_name: str = "default"

    @property
    def retry_config(self) -> RetryConfig:
        """Get the retry configuration for this task."""
        return RETRY_CONFIGS.get(self.retry_config_name, RETRY_CONFIGS["default"])

    def on_failure(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any) -> None:
        """Handle task failure - can be overridden for custom failure handling."""

    def retry_with_backoff(self, exc: Exception, attempt: int) -> None:
        """Retry the task with exponential backoff.

        Args:
            exc: The exception that caused the failure.
            attempt: The current attempt number (1-indexed).

        Raises:
            MaxRetriesExceededError: If max attempts have been reached.
        """
        config = self.retry_config

        if config.is_exhausted(attempt):
            raise self.MaxRetriesExceededError(
                f"Max retries ({config.max_attempts}) exceeded for task"
            )

        delay = config.calculate_delay(attempt)
        raise self.retry(exc=exc, countdown=delay)

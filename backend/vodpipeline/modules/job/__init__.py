"""Shared retry policy and Celery task base classes."""

from vodpipeline.modules.job.tasks import (
    RETRY_CONFIGS,
    BaseTaskWithRetry,
    RetryConfig,
    transcode_retry_config,
)

__all__ = [
    "RETRY_CONFIGS",
    "BaseTaskWithRetry",
    "RetryConfig",
    "transcode_retry_config",
]

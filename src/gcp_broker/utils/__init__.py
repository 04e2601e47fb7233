"""Shared utilities: retry supervision and async concurrency helpers."""

from gcp_broker.utils.concurrency import BoundedSemaphore, run_with_timeout
from gcp_broker.utils.retry import (
    BackoffStrategy,
    RetrySupervisor,
    compute_delay,
    is_transient_error,
    make_retryable,
    with_retry,
)

__all__ = [
    "BackoffStrategy",
    "BoundedSemaphore",
    "RetrySupervisor",
    "compute_delay",
    "is_transient_error",
    "make_retryable",
    "run_with_timeout",
    "with_retry",
]

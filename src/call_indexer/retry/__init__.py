"""Backoff retry engine exports."""

from call_indexer.retry.classify import default_is_retryable
from call_indexer.retry.engine import RetryEngine, create_retry_fn, with_retry
from call_indexer.retry.models import (
    AttemptOutcome,
    Exhausted,
    NonRetryableFailure,
    RetryMetrics,
    RetryPolicy,
    Success,
    TransientFailure,
)

__all__ = [
    "AttemptOutcome",
    "Exhausted",
    "NonRetryableFailure",
    "RetryEngine",
    "RetryMetrics",
    "RetryPolicy",
    "Success",
    "TransientFailure",
    "create_retry_fn",
    "default_is_retryable",
    "with_retry",
]

"""Retry policy, per-event state machine, retry queue and dead letter queue."""

from hookline.retry.dlq import (
    DeadLetterService,
    DeadLetterStore,
    DeadLetterStoreError,
    DLQEntry,
    DLQEntryNotFoundError,
    DLQStatus,
    InMemoryDeadLetterStore,
    InvalidDLQTransition,
    SqlDeadLetterStore,
)
from hookline.retry.policy import RetryPolicy, with_one_more_attempt
from hookline.retry.queue import RetryItem, RetryQueue
from hookline.retry.state import (
    InvalidRetryTransition,
    RetryState,
    RetryStatus,
    on_failure,
    on_success,
)

__all__ = [
    "DLQEntry",
    "DLQEntryNotFoundError",
    "DLQStatus",
    "DeadLetterService",
    "DeadLetterStore",
    "DeadLetterStoreError",
    "InMemoryDeadLetterStore",
    "InvalidDLQTransition",
    "InvalidRetryTransition",
    "RetryItem",
    "RetryPolicy",
    "RetryQueue",
    "RetryState",
    "RetryStatus",
    "SqlDeadLetterStore",
    "on_failure",
    "on_success",
    "with_one_more_attempt",
]

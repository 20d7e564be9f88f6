"""Per-event retry state machine.

    RECEIVED --fail(transient, n < max)--> RETRYING(n)
    RECEIVED --fail(permanent | n == max)--> DEAD_LETTERED
    RECEIVED --ok--> SUCCEEDED
    RETRYING --fail(transient, n < max)--> RETRYING(n)
    RETRYING --fail(permanent | n == max)--> DEAD_LETTERED
    RETRYING --ok--> SUCCEEDED

SUCCEEDED and DEAD_LETTERED are terminal. ``attempts`` counts failed
processing attempts and becomes ``metadata.retry_count``.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum

from hookline.errors import ErrorClass, PipelineError, Stage
from hookline.retry.policy import RetryPolicy


class RetryStatus(str, Enum):
    RECEIVED = "received"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    DEAD_LETTERED = "dead_lettered"


TERMINAL_STATUSES = frozenset({RetryStatus.SUCCEEDED, RetryStatus.DEAD_LETTERED})


class InvalidRetryTransition(Exception):
    """Raised when a transition is applied to a terminal state."""


@dataclass(frozen=True)
class RetryState:
    """Attempt bookkeeping for one event.

    Attributes:
        status: Current state.
        attempts: Failed attempts so far.
        stage: Stage the last failure happened in.
        last_error: describe() of the last failure.
        error_class: Class of the last failure.
        next_delay_seconds: Delay before the next attempt while RETRYING.
    """

    status: RetryStatus = RetryStatus.RECEIVED
    attempts: int = 0
    stage: Stage | None = None
    last_error: str | None = None
    error_class: ErrorClass | None = None
    next_delay_seconds: float | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def _ensure_open(state: RetryState) -> None:
    if state.terminal:
        raise InvalidRetryTransition(f"state {state.status.value} is terminal")


def on_success(state: RetryState) -> RetryState:
    _ensure_open(state)
    return replace(state, status=RetryStatus.SUCCEEDED, next_delay_seconds=None)


def on_failure(
    state: RetryState,
    error: PipelineError,
    policy: RetryPolicy,
    rand: Callable[[], float] = random.random,
) -> RetryState:
    """Apply one failed attempt.

    Transient failures are retried while attempts < max_attempts; everything
    else, and the attempt that reaches max_attempts, dead-letters.
    """
    _ensure_open(state)
    attempts = state.attempts + 1
    failed = replace(
        state,
        attempts=attempts,
        stage=error.stage,
        last_error=error.describe(),
        error_class=error.error_class,
    )
    if error.retryable and not policy.exhausted(attempts):
        return replace(
            failed,
            status=RetryStatus.RETRYING,
            next_delay_seconds=policy.delay(attempts, rand),
        )
    return replace(failed, status=RetryStatus.DEAD_LETTERED, next_delay_seconds=None)

"""Failure taxonomy for the ingress pipeline.

Every stage after signature verification reports failures as a PipelineError
carrying the stage it happened in and its classification. The retry queue is
the only component that turns a classification into a retry or DLQ decision.

Classes:
- SECURITY: signature/replay failures. Never retried, always alerted.
- PERMANENT: schema, mapping, 4xx (non-429). Never retried, dead-lettered.
- TRANSIENT: timeouts, 5xx, 429, store unavailability. Retried with backoff.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorClass(str, Enum):
    """Classification attached to every pipeline failure."""

    SECURITY = "security"
    PERMANENT = "permanent"
    TRANSIENT = "transient"


class Stage(str, Enum):
    """Pipeline stages in control-flow order."""

    RECEIVE = "receive"
    VERIFY = "verify"
    REPLAY_GUARD = "replay_guard"
    VALIDATE = "validate"
    NORMALIZE = "normalize"
    ROUTE = "route"
    INVOKE = "invoke"


class PipelineError(Exception):
    """Base failure raised by a pipeline stage.

    Attributes:
        stage: Stage that failed.
        message: Human-readable description (no secrets, no payload).
        error_class: Retry classification.
        details: Optional structured context.
    """

    error_class: ErrorClass = ErrorClass.PERMANENT

    def __init__(
        self,
        stage: Stage,
        message: str,
        error_class: ErrorClass | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.message = message
        if error_class is not None:
            self.error_class = error_class
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.error_class == ErrorClass.TRANSIENT

    def describe(self) -> str:
        """Short form stored in metadata.error and DLQ entries."""
        return f"{self.stage.value}: {self.message}"


class SignatureError(PipelineError):
    """Raised when a delivery cannot be authenticated.

    The reason is kept for the security audit record and is never returned to
    the caller.
    """

    error_class = ErrorClass.SECURITY

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(Stage.VERIFY, f"signature rejected for {source}: {reason}")
        self.source = source
        self.reason = reason


class ReplayRejectedError(PipelineError):
    """Raised when a delivery's self-reported timestamp is outside tolerance."""

    error_class = ErrorClass.SECURITY

    def __init__(self, source: str, skew_seconds: float, tolerance_seconds: int) -> None:
        super().__init__(
            Stage.REPLAY_GUARD,
            f"timestamp skew {skew_seconds:.0f}s exceeds tolerance {tolerance_seconds}s",
            details={"skew_seconds": int(skew_seconds), "tolerance_seconds": tolerance_seconds},
        )
        self.source = source
        self.reason = "timestamp_skew"


class InvalidPayloadError(PipelineError):
    """Raised when an authentic body is not a JSON object."""

    error_class = ErrorClass.PERMANENT

    def __init__(self, message: str) -> None:
        super().__init__(Stage.VALIDATE, message)


class SchemaValidationError(PipelineError):
    """Raised with every violation found, not just the first."""

    error_class = ErrorClass.PERMANENT

    def __init__(self, source: str, violations: list[dict[str, str]]) -> None:
        super().__init__(
            Stage.VALIDATE,
            f"{len(violations)} schema violation(s) for {source}",
            details={"violations": violations},
        )
        self.violations = violations


class MappingError(PipelineError):
    """Raised when a schema-valid field has an unmappable shape."""

    error_class = ErrorClass.PERMANENT

    def __init__(self, source: str, field: str, reason: str) -> None:
        super().__init__(Stage.NORMALIZE, f"cannot map {source} field '{field}': {reason}")
        self.field = field


class DestinationError(PipelineError):
    """Raised when a destination call fails.

    Classification follows the HTTP status when there is one: 5xx and 429 are
    transient, every other 4xx is permanent.
    """

    def __init__(
        self,
        message: str,
        error_class: ErrorClass,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            Stage.INVOKE,
            message,
            error_class=error_class,
            details={"status_code": status_code} if status_code is not None else None,
        )
        self.status_code = status_code


class DestinationTimeoutError(DestinationError):
    """Raised when a destination call exceeds the rule timeout."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"timed out after {timeout_seconds}s", ErrorClass.TRANSIENT)
        self.timeout_seconds = timeout_seconds


class StoreUnavailableError(PipelineError):
    """Raised when the idempotency store cannot be reached."""

    error_class = ErrorClass.TRANSIENT

    def __init__(self, message: str) -> None:
        super().__init__(Stage.REPLAY_GUARD, message)


class RetryInterruptedError(PipelineError):
    """Raised for a scheduled retry that never ran because the process stopped."""

    error_class = ErrorClass.TRANSIENT

    def __init__(self, stage: Stage, last_error: str | None) -> None:
        message = "shutdown before the scheduled retry"
        if last_error:
            message = f"{message}; last error: {last_error}"
        super().__init__(stage, message)


def classify_status(status_code: int) -> ErrorClass | None:
    """Map an HTTP status to a failure class, or None for success."""
    if 200 <= status_code < 300:
        return None
    if status_code == 429 or status_code >= 500:
        return ErrorClass.TRANSIENT
    return ErrorClass.PERMANENT

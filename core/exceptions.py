"""
Replication Exceptions
======================

Exception hierarchy for the replication pipeline. Every exception carries a
context dict for logging and alerting.

Exception Hierarchy:
    ReplicationError (base)
    ├── RetryableError
    │   ├── SourceUnavailable
    │   ├── WriteFailed
    │   ├── StagingLoadFailed
    │   ├── MergeFailed
    │   ├── CheckpointSaveFailed
    │   ├── CheckpointLoadFailed
    │   └── CallTimeout
    ├── NonRetryableError
    │   ├── ConfigurationError
    │   │   └── SourceSchemaMismatch
    │   ├── EventOrderViolation
    │   └── WatermarkRegression
    └── CircuitOpenError
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class ReplicationError(Exception):
    """
    Base exception for all replication errors.

    Attributes:
        message: Human-readable error message
        context: Additional context (table key, batch id, stage, ...)
        original_exception: The exception that was caught, if any
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        self.message = message
        self.context = dict(context or {})
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        super().__init__(message)
        if original_exception is not None:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception is not None:
            base_msg += (
                f" | Caused by: {type(self.original_exception).__name__}: "
                f"{self.original_exception}"
            )

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/alerting."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "retryable": isinstance(self, RetryableError),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Transient errors
# ============================================================================

class RetryableError(ReplicationError):
    """
    Transient failure. The stage that raised it is retried with backoff
    until the circuit breaker threshold is reached.
    """
    pass


class SourceUnavailable(RetryableError):
    """Connectivity loss while reading from a change source."""
    pass


class WriteFailed(RetryableError):
    """
    Batch artifact could not be written to object storage.

    Safe to retry: the artifact path is unique per batch id.
    """
    pass


class StagingLoadFailed(RetryableError):
    """
    Bulk load into the staging area failed.

    Safe to retry: duplicate staged rows are resolved at merge time.
    """
    pass


class MergeFailed(RetryableError):
    """
    Merge into the target table failed and was rolled back.

    Safe to retry: staging is untouched until a merge commits.
    """
    pass


class CheckpointSaveFailed(RetryableError):
    """Checkpoint could not be persisted."""
    pass


class CheckpointLoadFailed(RetryableError):
    """Stored checkpoint could not be read."""
    pass


class CallTimeout(RetryableError):
    """An external call exceeded its timeout."""
    pass


# ============================================================================
# Permanent errors
# ============================================================================

class NonRetryableError(ReplicationError):
    """Permanent failure. Never retried."""
    pass


class ConfigurationError(NonRetryableError):
    """
    Invalid table configuration (missing primary key, unreadable cursor
    column, ...). Fatal to the affected table's pipeline only.
    """
    pass


class SourceSchemaMismatch(ConfigurationError):
    """Declared primary key columns are absent from the source table."""
    pass


class EventOrderViolation(NonRetryableError):
    """
    A source returned a change ordered below one it already returned, so
    its read order and the ordering token disagree.
    """
    pass


class WatermarkRegression(NonRetryableError):
    """A checkpoint save would move the high watermark backwards."""
    pass


# ============================================================================
# Pipeline signals
# ============================================================================

class CircuitOpenError(ReplicationError):
    """Raised when consecutive failures open a pipeline's circuit breaker."""
    pass

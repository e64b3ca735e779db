"""
Core
====

Shared building blocks for the replication service.

Modules:
    exceptions: Error taxonomy used by every pipeline stage
"""

from .exceptions import (
    ReplicationError,
    RetryableError,
    NonRetryableError,
    ConfigurationError,
    SourceUnavailable,
    SourceSchemaMismatch,
    EventOrderViolation,
    WriteFailed,
    StagingLoadFailed,
    MergeFailed,
    CheckpointSaveFailed,
    CheckpointLoadFailed,
    WatermarkRegression,
    CallTimeout,
    CircuitOpenError,
)

__all__ = [
    "ReplicationError",
    "RetryableError",
    "NonRetryableError",
    "ConfigurationError",
    "SourceUnavailable",
    "SourceSchemaMismatch",
    "EventOrderViolation",
    "WriteFailed",
    "StagingLoadFailed",
    "MergeFailed",
    "CheckpointSaveFailed",
    "CheckpointLoadFailed",
    "WatermarkRegression",
    "CallTimeout",
    "CircuitOpenError",
]

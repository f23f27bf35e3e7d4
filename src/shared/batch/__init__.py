"""Shared batch processing infrastructure.

Provides generic utilities for batch processing pipelines:
- CheckpointManager: Keyed JSON checkpoint documents with atomic writes
- FailureTracker: Tracks failed work items per stage
- ProgressTracker: Processing progress and metrics
- compute_backoff_delay / retry_on_network_error: Exponential backoff helpers

Usage:
    from src.shared.batch import CheckpointManager, FailureTracker, ProgressTracker
    from src.shared.batch import compute_backoff_delay, retry_on_network_error
"""

from .checkpoint import CheckpointManager, CheckpointReadError
from .failure_tracker import FailureTracker
from .progress import ProgressTracker
from .retry import (
    RETRYABLE_NETWORK_ERRORS,
    compute_backoff_delay,
    is_network_error,
    retry_on_network_error,
)

__all__ = [
    "CheckpointManager",
    "CheckpointReadError",
    "FailureTracker",
    "ProgressTracker",
    "RETRYABLE_NETWORK_ERRORS",
    "compute_backoff_delay",
    "is_network_error",
    "retry_on_network_error",
]

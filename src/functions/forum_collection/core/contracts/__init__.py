"""Data contracts for forum collection."""

from .config import (
    CollectionConfig,
    DispatchConfig,
    ForumSourceConfig,
    JobRetryConfig,
    MonitorConfig,
    PartitionConfig,
    PriorityConfig,
    SchedulerConfig,
)
from .extraction import Chunk, Entity, ExtractionResult, Mention, Outcome, OutcomeKind
from .job import Checkpoint, JobKind, JobRunResult, JobSpec, JobStatus, JobSummary, JobTarget
from .thread import Comment, ForumThread, Post

__all__ = [
    "CollectionConfig",
    "DispatchConfig",
    "ForumSourceConfig",
    "JobRetryConfig",
    "MonitorConfig",
    "PartitionConfig",
    "PriorityConfig",
    "SchedulerConfig",
    "Chunk",
    "Entity",
    "ExtractionResult",
    "Mention",
    "Outcome",
    "OutcomeKind",
    "Checkpoint",
    "JobKind",
    "JobRunResult",
    "JobSpec",
    "JobStatus",
    "JobSummary",
    "JobTarget",
    "Comment",
    "ForumThread",
    "Post",
]

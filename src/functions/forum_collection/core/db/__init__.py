"""Persistence backends for checkpoints, jobs, mentions and entities."""

from .checkpoint_store import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
    SupabaseCheckpointStore,
)
from .job_store import FileJobStore, InMemoryJobStore, JobStore, SupabaseJobStore
from .mention_store import InMemoryMentionStore, MentionStore, SupabaseMentionStore

__all__ = [
    "CheckpointStore",
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
    "SupabaseCheckpointStore",
    "FileJobStore",
    "InMemoryJobStore",
    "JobStore",
    "SupabaseJobStore",
    "InMemoryMentionStore",
    "MentionStore",
    "SupabaseMentionStore",
]

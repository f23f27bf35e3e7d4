"""Exception hierarchy raised at the boundaries of the collection pipeline.

Collaborators (forum client, extraction client, stores) raise these; the job
runner and the extraction gateway turn them into typed outcomes.
"""

from __future__ import annotations

from typing import Optional


class ForumCollectionError(Exception):
    """Base class for collection pipeline errors."""


class SourceError(ForumCollectionError):
    """Failure talking to the forum content provider."""


class SourceRateLimitError(SourceError):
    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class SourceNotFoundError(SourceError):
    """The requested post/thread no longer exists or is not accessible."""


class SourceUnavailableError(SourceError):
    """Transport failure or 5xx from the forum API."""


class MalformedThreadError(SourceError):
    """The provider returned a payload that cannot be parsed into a thread."""


class ExtractionError(ForumCollectionError):
    """Failure talking to the extraction service."""


class ExtractionRateLimitError(ExtractionError):
    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ExtractionResponseError(ExtractionError):
    """The extraction service answered with something that is not valid mention JSON."""


class CheckpointCorruptError(ForumCollectionError):
    """A stored checkpoint is unreadable or inconsistent with the job's work items."""


class InvalidTransitionError(ForumCollectionError):
    """A job status change that the state table does not allow."""


class StoreError(ForumCollectionError):
    """Persistence layer failure (mentions, entities, jobs, registry)."""

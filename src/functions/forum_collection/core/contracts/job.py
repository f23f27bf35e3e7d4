"""Job, checkpoint and summary models for collection jobs."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..errors import InvalidTransitionError


class JobKind(str, Enum):
    """Closed set of job kinds. Every consumer handles all three."""

    CHRONOLOGICAL = "chronological"
    KEYWORD_SEARCH = "keyword_search"
    MANUAL = "manual"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.RETRYING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.RETRYING: frozenset({JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def ensure_transition(current: JobStatus, target: JobStatus) -> JobStatus:
    """Return ``target`` if the move from ``current`` is legal, else raise."""

    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Illegal job transition {current.value} -> {target.value}")
    return target


class JobTarget(BaseModel):
    """What a job collects: a forum source plus an optional keyword/entity."""

    source: str = Field(..., min_length=1, description="Forum/community name, e.g. a subreddit")
    keyword: Optional[str] = Field(default=None, description="Search term for keyword jobs")
    entity_key: Optional[str] = Field(default=None, description="Normalized entity key the keyword came from")
    item_ids: List[str] = Field(
        default_factory=list,
        description="Explicit work items for manual jobs (post ids); empty means latest posts",
    )
    since: Optional[datetime] = Field(default=None, description="Lower bound for chronological collection")

    @field_validator("source")
    @classmethod
    def _normalise_source(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            msg = "source must be a non-empty string"
            raise ValueError(msg)
        return cleaned


def target_key(kind: JobKind, target: JobTarget) -> str:
    """Exclusivity key used by the live-job registry.

    Chronological and manual jobs are exclusive per ``(source, kind)``. Keyword
    jobs additionally include the entity so different entities on the same
    source can run side by side.
    """

    if kind is JobKind.CHRONOLOGICAL or kind is JobKind.MANUAL:
        return f"{target.source.lower()}|{kind.value}"
    if kind is JobKind.KEYWORD_SEARCH:
        entity = target.entity_key or (target.keyword or "").lower()
        return f"{target.source.lower()}|{kind.value}|{entity}"
    raise ValueError(f"Unhandled job kind: {kind!r}")


class JobSpec(BaseModel):
    """Operator-visible job description: ``{id, kind, target, priority, createdAt, status}``."""

    id: str
    kind: JobKind
    target: JobTarget
    priority: int = Field(default=0, ge=0, le=100)
    status: JobStatus = Field(default=JobStatus.QUEUED)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def target_key(self) -> str:
        return target_key(self.kind, self.target)

    def with_status(self, status: JobStatus) -> "JobSpec":
        """Return a copy moved to ``status``; raises on illegal transitions."""

        ensure_transition(self.status, status)
        return self.model_copy(update={"status": status})

    def to_dict(self) -> Dict[str, object]:
        return self.model_dump(mode="json")


def build_job_id(kind: JobKind, sources: List[str], created_at: datetime, suffix: Optional[str] = None) -> str:
    """``{kind}-{sorted sources}-{epoch millis}[-{suffix}]``."""

    millis = int(created_at.timestamp() * 1000)
    joined = "-".join(sorted(s.lower() for s in sources))
    job_id = f"{kind.value}-{joined}-{millis}"
    if suffix:
        job_id = f"{job_id}-{suffix}"
    return job_id


class Checkpoint(BaseModel):
    """Durable progress snapshot owned by the job runner."""

    job_id: str
    status: JobStatus = Field(default=JobStatus.QUEUED)
    work_items: List[str] = Field(default_factory=list, description="Item ids snapshotted on first run")
    last_completed_item_id: Optional[str] = None
    items_processed_count: int = Field(default=0, ge=0)
    retry_count: int = Field(default=0, ge=0)
    backoff_until: Optional[datetime] = None
    last_backoff_seconds: float = Field(default=0.0, ge=0, description="Floor for the next retry delay")
    aggregate_counts: Dict[str, float] = Field(default_factory=dict)
    chunk_sizes: List[int] = Field(default_factory=list)
    updated_at: Optional[datetime] = None

    def bump(self, key: str, amount: float = 1) -> None:
        self.aggregate_counts[key] = self.aggregate_counts.get(key, 0) + amount


class JobSummary(BaseModel):
    """Per-job summary exposed on the metrics/log surface."""

    job_id: str
    items_processed: int = 0
    chunks_total: int = 0
    chunk_size_distribution: List[int] = Field(default_factory=list)
    success_rate: float = 100.0
    avg_chunk_time_ms: float = 0.0
    total_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "jobId": self.job_id,
            "itemsProcessed": self.items_processed,
            "chunksTotal": self.chunks_total,
            "chunkSizeDistribution": list(self.chunk_size_distribution),
            "successRate": self.success_rate,
            "avgChunkTimeMs": self.avg_chunk_time_ms,
            "totalTimeMs": self.total_time_ms,
        }


class JobRunResult(BaseModel):
    """What the job runner returns once a job stops."""

    job: JobSpec
    summary: JobSummary
    retry_count: int = 0
    skipped_items: List[str] = Field(default_factory=list)
    failures: Dict[str, int] = Field(default_factory=dict)
    error: Optional[str] = None

    @property
    def status(self) -> JobStatus:
        return self.job.status

    def to_dict(self) -> Dict[str, object]:
        return {
            "job": self.job.to_dict(),
            "summary": self.summary.to_dict(),
            "retry_count": self.retry_count,
            "skipped_items": list(self.skipped_items),
            "failures": dict(self.failures),
            "error": self.error,
        }

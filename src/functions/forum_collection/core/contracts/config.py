"""Configuration models for forum collection."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

MIN_INTERVAL_DAYS = 7
MAX_INTERVAL_DAYS = 60
SAFETY_BUFFER_POSTS = 750
DEFAULT_POSTS_PER_DAY = 20.0


def safety_buffer_interval_days(average_posts_per_day: Optional[float]) -> float:
    """Days between chronological runs so a run never misses posts.

    The listing endpoint returns at most ~1000 posts; collecting every
    ``750 / posts_per_day`` days keeps a margin under that, clamped to a week
    and two months.
    """

    if not average_posts_per_day or average_posts_per_day <= 0:
        average_posts_per_day = DEFAULT_POSTS_PER_DAY
    raw = SAFETY_BUFFER_POSTS / average_posts_per_day
    return max(MIN_INTERVAL_DAYS, min(MAX_INTERVAL_DAYS, raw))


class PartitionConfig(BaseModel):
    max_chunk_size: int = Field(default=80, ge=1, le=1000)
    max_chunk_chars: int = Field(default=12000, ge=1, description="Post context plus comment bodies")
    max_chunk_tokens: int = Field(default=35000, ge=1, description="Budget for the chars/4 token estimate")
    extract_from_post: bool = Field(default=True)


class DispatchConfig(BaseModel):
    concurrency_limit: int = Field(default=16, ge=1, le=128)
    chunk_retry_budget: int = Field(default=2, ge=0, le=10, description="Extra attempts per chunk")
    chunk_retry_base_seconds: float = Field(default=1.0, ge=0)
    chunk_retry_max_seconds: float = Field(default=30.0, ge=0)
    max_chunk_failure_ratio: float = Field(
        default=0.05,
        ge=0.0,
        le=1.0,
        description="Largest failed-chunk fraction an item may have and still merge",
    )
    chunk_timeout_seconds: float = Field(default=120.0, gt=0)


class JobRetryConfig(BaseModel):
    max_retries: int = Field(default=5, ge=0, le=50)
    base_delay_seconds: float = Field(default=5.0, ge=0)
    max_delay_seconds: float = Field(default=900.0, ge=0)

    @model_validator(mode="after")
    def _cap_not_below_base(self) -> "JobRetryConfig":
        if self.max_delay_seconds < self.base_delay_seconds:
            msg = "max_delay_seconds must be >= base_delay_seconds"
            raise ValueError(msg)
        return self


class PriorityConfig(BaseModel):
    """Weights of the re-enrichment priority score. Weights need not sum to 1."""

    recency_weight: float = Field(default=0.40, ge=0)
    completeness_weight: float = Field(default=0.35, ge=0)
    demand_weight: float = Field(default=0.25, ge=0)
    recency_horizon_days: float = Field(default=30.0, gt=0)
    demand_cap: float = Field(default=50.0, gt=0)
    expected_mentions: int = Field(default=20, ge=1)
    new_entity_boost: float = Field(default=10.0, ge=0, le=100)

    @model_validator(mode="after")
    def _some_weight(self) -> "PriorityConfig":
        if self.recency_weight + self.completeness_weight + self.demand_weight <= 0:
            msg = "at least one priority weight must be positive"
            raise ValueError(msg)
        return self


class MonitorConfig(BaseModel):
    window_size: int = Field(default=20, ge=1)
    success_rate_threshold: float = Field(default=80.0, ge=0, le=100)
    consecutive_failure_threshold: int = Field(default=3, ge=1)
    alert_cooldown_seconds: float = Field(default=3600.0, ge=0)
    stalled_job_minutes: float = Field(default=30.0, gt=0)
    slow_job_minutes: float = Field(default=10.0, gt=0)
    min_jobs_for_rate_alert: int = Field(default=5, ge=1)
    history_limit: int = Field(default=1000, ge=1)


class SchedulerConfig(BaseModel):
    enrichment_interval_days: float = Field(default=30.0, gt=0)
    enrichment_offset_days: float = Field(default=0.0, ge=0)
    top_k: int = Field(default=25, ge=0)
    executor_count: int = Field(default=2, ge=1, le=16)
    manual_priority: int = Field(default=100, ge=0, le=100)
    chronological_priority: int = Field(default=50, ge=0, le=100)
    posts_per_run: int = Field(default=100, ge=1, le=1000)
    volume_smoothing: float = Field(default=0.3, gt=0, le=1)


class ForumSourceConfig(BaseModel):
    """One forum community to collect from."""

    name: str = Field(..., min_length=1)
    enabled: bool = True
    interval_hours: Optional[float] = Field(default=None, gt=0)
    average_posts_per_day: Optional[float] = Field(default=None, gt=0)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            msg = "source name cannot be empty"
            raise ValueError(msg)
        return cleaned

    @property
    def interval_seconds(self) -> float:
        if self.interval_hours is not None:
            return self.interval_hours * 3600
        return safety_buffer_interval_days(self.average_posts_per_day) * 86400


class CollectionConfig(BaseModel):
    """Complete configuration for one process running the collector."""

    partition: PartitionConfig = Field(default_factory=PartitionConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    job_retry: JobRetryConfig = Field(default_factory=JobRetryConfig)
    priority: PriorityConfig = Field(default_factory=PriorityConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    sources: List[ForumSourceConfig] = Field(default_factory=list)
    storage_backend: str = Field(default="file", pattern="^(memory|file|supabase)$")
    checkpoint_dir: Path = Field(default=Path("./data/checkpoints"))
    extraction_model: str = Field(default="gpt-5-mini")
    dry_run: bool = False

    def enabled_sources(self) -> List[ForumSourceConfig]:
        return [source for source in self.sources if source.enabled]

    def snapshot(self) -> Dict[str, object]:
        """Return a serialisable snapshot for reporting."""

        return self.model_dump(mode="json")

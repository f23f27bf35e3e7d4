"""Wires stores, scheduler, runner and monitor into one collection service.

The HTTP handler and the CLI both go through :class:`CollectionService`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from src.shared.db.connection import get_supabase_client
from ..contracts.config import CollectionConfig
from ..contracts.job import JobKind, JobRunResult, JobSpec, JobStatus
from ..db.checkpoint_store import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
    SupabaseCheckpointStore,
)
from ..db.job_store import FileJobStore, InMemoryJobStore, JobStore, SupabaseJobStore
from ..db.mention_store import InMemoryMentionStore, MentionStore, SupabaseMentionStore
from ..dispatch import ConcurrentDispatcher
from ..extraction import ExtractionGateway, OpenAIExtractionGateway
from ..jobs.executor import JobExecutor
from ..jobs.registry import InMemoryLiveJobRegistry, LiveJobRegistry, SupabaseLiveJobRegistry
from ..jobs.state_machine import CollectionJobRunner
from ..merge import MergeEngine
from ..monitoring import Monitor
from ..scheduling import Scheduler
from ..sources import ContentProvider, RedditContentProvider

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CollectionStores:
    checkpoints: CheckpointStore
    jobs: JobStore
    registry: LiveJobRegistry
    mentions: MentionStore


def build_stores(config: CollectionConfig, client: Any = None) -> CollectionStores:
    """Pick store backends for ``config.storage_backend``."""

    backend = config.storage_backend
    if backend == "supabase":
        client = client or get_supabase_client()
        return CollectionStores(
            checkpoints=SupabaseCheckpointStore(client),
            jobs=SupabaseJobStore(client),
            registry=SupabaseLiveJobRegistry(client),
            mentions=SupabaseMentionStore(client, dry_run=config.dry_run),
        )
    if backend == "file":
        checkpoints: CheckpointStore = FileCheckpointStore(config.checkpoint_dir)
        jobs: JobStore = FileJobStore(Path(config.checkpoint_dir) / "jobs")
    elif backend == "memory":
        checkpoints = InMemoryCheckpointStore()
        jobs = InMemoryJobStore()
    else:
        raise ValueError(f"Unknown storage backend: {backend}")
    return CollectionStores(
        checkpoints=checkpoints,
        jobs=jobs,
        registry=InMemoryLiveJobRegistry(),
        mentions=InMemoryMentionStore(),
    )


class CollectionService:
    """Operator-facing facade: tick, manual jobs, status, cancel, resume, health."""

    def __init__(
        self,
        config: CollectionConfig,
        stores: CollectionStores,
        *,
        provider: ContentProvider,
        gateway: ExtractionGateway,
        monitor: Optional[Monitor] = None,
        clock=_utcnow,
        sleep=None,
    ) -> None:
        self.config = config
        self.stores = stores
        self.monitor = monitor or Monitor(config.monitor)
        self._clock = clock

        dispatch_cfg = config.dispatch
        dispatcher_kwargs: Dict[str, Any] = {}
        runner_kwargs: Dict[str, Any] = {}
        if sleep is not None:
            dispatcher_kwargs["sleep"] = sleep
            runner_kwargs["sleep"] = sleep
        self.dispatcher = ConcurrentDispatcher(
            gateway,
            concurrency_limit=dispatch_cfg.concurrency_limit,
            retry_budget=dispatch_cfg.chunk_retry_budget,
            retry_base_seconds=dispatch_cfg.chunk_retry_base_seconds,
            retry_max_seconds=dispatch_cfg.chunk_retry_max_seconds,
            **dispatcher_kwargs,
        )
        self.scheduler = Scheduler(
            config,
            stores.registry,
            stores.mentions.list_entities,
            job_store=stores.jobs,
        )
        self.runner = CollectionJobRunner(
            config,
            provider,
            self.dispatcher,
            MergeEngine(stores.mentions),
            stores.checkpoints,
            monitor=self.monitor,
            job_store=stores.jobs,
            clock=clock,
            **runner_kwargs,
        )
        self.executor = JobExecutor(
            self.runner,
            stores.registry,
            scheduler=self.scheduler,
            job_store=stores.jobs,
            executor_count=config.scheduler.executor_count,
        )
        self._restore_watermarks()

    def _restore_watermarks(self) -> None:
        for job in self.stores.jobs.list_jobs(JobStatus.COMPLETED):
            if job.kind is JobKind.CHRONOLOGICAL:
                self.scheduler.record_run_success(job.target.source, job.created_at)

    # ------------------------------------------------------------ actions

    def tick(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self._clock()
        jobs = self.scheduler.tick(now)
        results = self.executor.run_all(jobs)
        return self._run_report(jobs, results)

    def request_manual(
        self,
        source: str,
        *,
        item_ids: Sequence[str] = (),
        keyword: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> JobSpec:
        return self.scheduler.request_manual(source, now or self._clock(), item_ids=item_ids, keyword=keyword)

    def cancel(self, job_id: str) -> bool:
        return self.executor.cancel(job_id)

    def resume(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Re-run interrupted jobs whose checkpoints are recent enough."""

        now = now or self._clock()
        jobs: List[JobSpec] = []
        for checkpoint in self.stores.checkpoints.resumable_jobs(now):
            job = self.stores.jobs.get(checkpoint.job_id)
            if job is None:
                logger.warning("Checkpoint %s has no job record; not resuming", checkpoint.job_id)
                continue
            holder = self.stores.registry.holder(job.target_key)
            if holder not in (None, job.id):
                logger.info("Target %s is busy with %s; not resuming %s", job.target_key, holder, job.id)
                continue
            if holder is None and not self.stores.registry.claim(job.target_key, job.id):
                continue
            jobs.append(job)
        logger.info("Resuming %d interrupted jobs", len(jobs))
        results = self.executor.run_all(jobs)
        return self._run_report(jobs, results)

    def cleanup(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or self._clock()
        return {
            "checkpoints_removed": self.stores.checkpoints.cleanup(now),
            "job_records_removed": self.monitor.cleanup(now),
        }

    # ------------------------------------------------------------ queries

    def status(self, job_id: Optional[str] = None) -> Dict[str, Any]:
        if job_id is not None:
            job = self.stores.jobs.get(job_id)
            if job is None:
                return {"job": None}
            checkpoint = self.stores.checkpoints.load(job_id)
            return {
                "job": job.to_dict(),
                "checkpoint": checkpoint.model_dump(mode="json") if checkpoint else None,
                "chunks": self.monitor.job_metrics(job_id),
            }
        jobs = self.stores.jobs.list_jobs()
        counts: Dict[str, int] = {}
        for job in jobs:
            counts[job.status.value] = counts.get(job.status.value, 0) + 1
        return {
            "jobs": counts,
            "live_targets": self.stores.registry.active(),
            "running": self.executor.running(),
            "pending_manual": [job.id for job in self.scheduler.pending_manual()],
            "dispatcher": self.dispatcher.queue_status(),
            "performance": self.monitor.performance_metrics(),
        }

    def health(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        health = self.monitor.health_status(now or self._clock())
        health["alerts"] = [alert.to_dict() for alert in self.monitor.alerts[-10:]]
        return health

    @staticmethod
    def _run_report(jobs: Sequence[JobSpec], results: Sequence[JobRunResult]) -> Dict[str, Any]:
        statuses: Dict[str, int] = {}
        for result in results:
            statuses[result.status.value] = statuses.get(result.status.value, 0) + 1
        return {
            "jobs_emitted": len(jobs),
            "statuses": statuses,
            "results": [result.to_dict() for result in results],
        }


def build_service(
    config: CollectionConfig,
    *,
    client: Any = None,
    provider: Optional[ContentProvider] = None,
    gateway: Optional[ExtractionGateway] = None,
) -> CollectionService:
    """Build a service from config, creating the production collaborators if not given."""

    stores = build_stores(config, client)
    if provider is None:
        provider = RedditContentProvider(timeout_seconds=config.dispatch.chunk_timeout_seconds)
    if gateway is None:
        gateway = OpenAIExtractionGateway(
            model=config.extraction_model,
            timeout=config.dispatch.chunk_timeout_seconds,
        )
    return CollectionService(config, stores, provider=provider, gateway=gateway)

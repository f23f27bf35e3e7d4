"""Runs emitted jobs on a small pool of executors and releases their claims."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Sequence

from ..contracts.job import JobKind, JobRunResult, JobSpec, JobStatus
from ..db.job_store import JobStore
from ..scheduling import Scheduler
from .registry import LiveJobRegistry
from .state_machine import CollectionJobRunner

logger = logging.getLogger(__name__)


class JobExecutor:
    """Each executor runs one job to completion; a job's claim is dropped when it stops."""

    def __init__(
        self,
        runner: CollectionJobRunner,
        registry: LiveJobRegistry,
        *,
        scheduler: Optional[Scheduler] = None,
        job_store: Optional[JobStore] = None,
        executor_count: int = 2,
    ) -> None:
        if executor_count < 1:
            raise ValueError("executor_count must be >= 1")
        self.runner = runner
        self.registry = registry
        self.scheduler = scheduler
        self.job_store = job_store
        self.executor_count = executor_count
        self._lock = threading.Lock()
        self._cancel_events: Dict[str, threading.Event] = {}

    def running(self) -> List[str]:
        with self._lock:
            return sorted(self._cancel_events)

    def cancel(self, job_id: str) -> bool:
        """Ask a job to stop at its next item boundary.

        Returns True when the job is running here or the job store accepted the
        request.
        """
        with self._lock:
            event = self._cancel_events.get(job_id)
        if event is not None:
            event.set()
        accepted = self.job_store.request_cancel(job_id) if self.job_store is not None else False
        logger.info("Cancellation requested for job %s", job_id)
        return event is not None or accepted

    def run_job(self, job: JobSpec) -> JobRunResult:
        event = threading.Event()
        with self._lock:
            self._cancel_events[job.id] = event
        try:
            result = self.runner.run(job, cancel_event=event)
        finally:
            with self._lock:
                self._cancel_events.pop(job.id, None)
            self.registry.release(job.target_key, job.id)

        if result.status is JobStatus.COMPLETED and self.scheduler is not None:
            self._record_success(job, result)
        return result

    def _record_success(self, job: JobSpec, result: JobRunResult) -> None:
        kind = job.kind
        if kind is JobKind.CHRONOLOGICAL:
            self.scheduler.record_run_success(job.target.source, job.created_at)
            since = job.target.since
            listed = result.summary.items_processed + len(result.skipped_items)
            if since is not None and listed:
                days = (job.created_at - since).total_seconds() / 86400
                if days > 0:
                    self.scheduler.update_posting_volume(job.target.source, listed / days)
        elif kind is JobKind.KEYWORD_SEARCH or kind is JobKind.MANUAL:
            # Neither moves the chronological watermark
            return
        else:
            raise ValueError(f"Unhandled job kind: {kind!r}")

    def run_all(self, jobs: Sequence[JobSpec]) -> List[JobRunResult]:
        """Run ``jobs`` in order of submission on ``executor_count`` workers.

        Results are returned in the order of ``jobs``. A job whose runner raised
        is logged and left out of the results; its claim is still released.
        """
        if not jobs:
            return []
        results: Dict[int, JobRunResult] = {}
        with ThreadPoolExecutor(max_workers=self.executor_count, thread_name_prefix="job") as pool:
            futures = {pool.submit(self.run_job, job): index for index, job in enumerate(jobs)}
            for future in as_completed(futures):
                index = futures[future]
                job = jobs[index]
                try:
                    results[index] = future.result()
                except Exception:  # noqa: BLE001
                    logger.exception("Job %s crashed", job.id)
                    continue
                logger.info("Job %s ended as %s", job.id, results[index].status.value)
        return [results[index] for index in sorted(results)]

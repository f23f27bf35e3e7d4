"""
Runs one collection job end to end.

For each work item: fetch thread → partition → dispatch → merge → checkpoint.
Failures from collaborators are turned into typed outcomes here; the retry
loop only ever looks at outcomes.
"""

from __future__ import annotations

import json
import logging
import random
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from src.shared.batch.failure_tracker import FailureTracker
from src.shared.batch.progress import ProgressTracker
from src.shared.batch.retry import compute_backoff_delay, is_network_error
from ..chunking import partition
from ..contracts.config import CollectionConfig
from ..contracts.extraction import Outcome, OutcomeKind
from ..contracts.job import Checkpoint, JobKind, JobRunResult, JobSpec, JobStatus, JobSummary
from ..db.checkpoint_store import CheckpointStore
from ..db.job_store import JobStore
from ..dispatch import ConcurrentDispatcher
from ..errors import (
    CheckpointCorruptError,
    ExtractionRateLimitError,
    ExtractionResponseError,
    MalformedThreadError,
    SourceNotFoundError,
    SourceRateLimitError,
    SourceUnavailableError,
    StoreError,
)
from ..merge import MergeEngine
from ..monitoring import Monitor, categorize_error
from ..sources import ContentProvider

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def classify_error(exc: BaseException) -> Outcome:
    """Map an exception raised by a collaborator onto a typed outcome."""

    if isinstance(exc, (SourceRateLimitError, ExtractionRateLimitError)):
        return Outcome.transient(str(exc), "rate_limit", retry_after=exc.retry_after)
    if isinstance(exc, (SourceNotFoundError, MalformedThreadError)):
        return Outcome.permanent(str(exc), "source_api_error")
    if isinstance(exc, SourceUnavailableError):
        return Outcome.transient(str(exc), "network_error")
    if isinstance(exc, CheckpointCorruptError):
        return Outcome.permanent(str(exc), "database_error")
    if isinstance(exc, StoreError):
        return Outcome.transient(str(exc), "database_error")
    if isinstance(exc, ExtractionResponseError):
        return Outcome.transient(str(exc), "unknown_error")
    if is_network_error(exc):
        return Outcome.transient(str(exc) or type(exc).__name__, "network_error")
    if isinstance(exc, MemoryError):
        return Outcome.transient("Out of memory", "memory_error")
    return Outcome.permanent(f"{type(exc).__name__}: {exc}", "unknown_error")


class CollectionJobRunner:
    """Drives a job through ``Queued → Running → {Retrying → Running}* → terminal``."""

    def __init__(
        self,
        config: CollectionConfig,
        provider: ContentProvider,
        dispatcher: ConcurrentDispatcher,
        merge_engine: MergeEngine,
        checkpoint_store: CheckpointStore,
        *,
        monitor: Optional[Monitor] = None,
        job_store: Optional[JobStore] = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.provider = provider
        self.dispatcher = dispatcher
        self.merge_engine = merge_engine
        self.checkpoint_store = checkpoint_store
        self.monitor = monitor
        self.job_store = job_store
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

    # ------------------------------------------------------------ public

    def run(self, job: JobSpec, cancel_event: Optional[threading.Event] = None) -> JobRunResult:
        """Run ``job`` until it reaches a terminal status and return the outcome."""

        started = time.monotonic()
        tracker = FailureTracker()
        skipped: List[str] = []

        if job.status.is_terminal:
            logger.warning("Job %s is already %s; nothing to run", job.id, job.status.value)
            return JobRunResult(job=job, summary=JobSummary(job_id=job.id))

        job = self._move(job, JobStatus.RUNNING)
        if self.monitor is not None:
            self.monitor.record_job_start(job, at=self._clock())

        try:
            checkpoint = self._load_checkpoint(job)
        except CheckpointCorruptError as exc:
            # Leave the damaged checkpoint in place for the operator
            logger.error("Checkpoint for job %s is corrupt: %s", job.id, exc)
            return self._finish(job, JobStatus.FAILED, None, started, tracker, skipped, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            error = f"Could not load checkpoint: {classify_error(exc).message}"
            logger.error("Job %s: %s", job.id, error)
            return self._finish(job, JobStatus.FAILED, None, started, tracker, skipped, error=error)

        if checkpoint is None:
            checkpoint = Checkpoint(job_id=job.id)
        elif checkpoint.status.is_terminal:
            logger.info("Job %s already finished as %s", job.id, checkpoint.status.value)
            job = job.model_copy(update={"status": checkpoint.status})
            if self.job_store is not None:
                self.job_store.save(job)
            return JobRunResult(job=job, summary=self._summary(checkpoint, 0.0), retry_count=checkpoint.retry_count)
        else:
            logger.info(
                "Resuming job %s after %s (%d items processed, %d retries)",
                job.id,
                checkpoint.last_completed_item_id or "start",
                checkpoint.items_processed_count,
                checkpoint.retry_count,
            )
            started -= checkpoint.aggregate_counts.get("elapsed_ms", 0.0) / 1000
            self._wait_for_backoff(checkpoint)

        while True:
            checkpoint.status = JobStatus.RUNNING
            outcome = self._run_items(job, checkpoint, tracker, skipped, cancel_event, started)

            if outcome is None:
                return self._finish(job, JobStatus.CANCELLED, checkpoint, started, tracker, skipped)
            if outcome.ok:
                return self._finish(job, JobStatus.COMPLETED, checkpoint, started, tracker, skipped)
            if outcome.kind is OutcomeKind.PERMANENT:
                return self._finish(
                    job, JobStatus.FAILED, checkpoint, started, tracker, skipped, error=outcome.message
                )

            checkpoint.retry_count += 1
            retry_cfg = self.config.job_retry
            if checkpoint.retry_count > retry_cfg.max_retries:
                error = f"Retry budget exhausted after {retry_cfg.max_retries} retries: {outcome.message}"
                return self._finish(job, JobStatus.FAILED, checkpoint, started, tracker, skipped, error=error)

            delay = compute_backoff_delay(
                checkpoint.retry_count,
                retry_cfg.base_delay_seconds,
                retry_cfg.max_delay_seconds,
                self._rng,
            )
            # A rate-limit hint may exceed the cap; later delays never drop below it
            delay = max(delay, outcome.retry_after or 0.0, checkpoint.last_backoff_seconds)
            now = self._clock()
            checkpoint.last_backoff_seconds = delay
            checkpoint.backoff_until = now + timedelta(seconds=delay)
            checkpoint.status = JobStatus.RETRYING
            checkpoint.updated_at = now
            job = self._move(job, JobStatus.RETRYING)
            saved = self._try_save_checkpoint(checkpoint)
            if saved is not None and saved.kind is OutcomeKind.PERMANENT:
                return self._finish(job, JobStatus.FAILED, checkpoint, started, tracker, skipped, error=saved.message)
            if self.monitor is not None:
                self.monitor.record_job_retry(job.id, checkpoint.retry_count, outcome.message, checkpoint.backoff_until)
            logger.warning(
                "Job %s transient failure (%s): retry %d/%d in %.1fs",
                job.id,
                outcome.category,
                checkpoint.retry_count,
                retry_cfg.max_retries,
                delay,
            )

            if self._cancel_requested(job, cancel_event):
                return self._finish(job, JobStatus.CANCELLED, checkpoint, started, tracker, skipped)
            self._sleep(delay)
            job = self._move(job, JobStatus.RUNNING)

    # ------------------------------------------------------------ items

    def work_items(self, job: JobSpec) -> List[str]:
        """List the post ids a job covers, oldest first."""

        target = job.target
        limit = self.config.scheduler.posts_per_run
        kind = job.kind
        if kind is JobKind.CHRONOLOGICAL:
            return self.provider.list_new_posts(target.source, target.since, limit)
        if kind is JobKind.KEYWORD_SEARCH:
            keyword = target.keyword or target.entity_key
            if not keyword:
                raise ValueError(f"Keyword job {job.id} has no keyword")
            return self.provider.search_posts(target.source, keyword, limit)
        if kind is JobKind.MANUAL:
            if target.item_ids:
                return list(dict.fromkeys(target.item_ids))
            if target.keyword:
                return self.provider.search_posts(target.source, target.keyword, limit)
            return self.provider.list_new_posts(target.source, target.since, limit)
        raise ValueError(f"Unhandled job kind: {kind!r}")

    def _pending_items(self, job: JobSpec, checkpoint: Checkpoint) -> List[str]:
        if not checkpoint.work_items and checkpoint.last_completed_item_id is None:
            checkpoint.work_items = self.work_items(job)
            checkpoint.updated_at = self._clock()
            self._save_checkpoint(checkpoint)
            logger.info("Job %s listed %d work items", job.id, len(checkpoint.work_items))

        last = checkpoint.last_completed_item_id
        if last is None:
            return list(checkpoint.work_items)
        try:
            position = checkpoint.work_items.index(last)
        except ValueError:
            raise CheckpointCorruptError(
                f"Checkpoint for {job.id} points at {last}, which is not one of its work items"
            ) from None
        return checkpoint.work_items[position + 1 :]

    def _run_items(
        self,
        job: JobSpec,
        checkpoint: Checkpoint,
        tracker: FailureTracker,
        skipped: List[str],
        cancel_event: Optional[threading.Event],
        started: float,
    ) -> Optional[Outcome]:
        """Process the remaining items.

        Returns:
            ``None`` when cancellation was requested, otherwise a success outcome
            or the failure that stopped the run.
        """
        try:
            pending = self._pending_items(job, checkpoint)
        except CheckpointCorruptError as exc:
            return Outcome.permanent(str(exc), "database_error")
        except ValueError as exc:
            return Outcome.permanent(str(exc), "unknown_error")
        except Exception as exc:  # noqa: BLE001
            outcome = classify_error(exc)
            logger.warning("Listing work items for job %s failed: %s", job.id, outcome.message)
            return outcome

        progress = ProgressTracker(total_items=len(pending), label=job.id)
        for item_id in pending:
            if self._cancel_requested(job, cancel_event):
                logger.info("Job %s cancelled before item %s", job.id, item_id)
                return None

            outcome = self._process_item(job, item_id, checkpoint)
            if outcome.kind is OutcomeKind.TRANSIENT:
                return outcome
            if outcome.kind is OutcomeKind.PERMANENT:
                logger.warning("Skipping item %s of job %s: %s", item_id, job.id, outcome.message)
                tracker.record_failure("item", item_id, outcome.message, category=outcome.category)
                tracker.mark_skipped("item", item_id)
                skipped.append(item_id)
                checkpoint.bump("items_skipped")
            else:
                checkpoint.items_processed_count += 1

            checkpoint.last_completed_item_id = item_id
            checkpoint.aggregate_counts["elapsed_ms"] = self._elapsed_ms(started)
            checkpoint.updated_at = self._clock()
            saved = self._try_save_checkpoint(checkpoint)
            if saved is not None:
                return saved
            progress.increment(success=outcome.ok)
            if progress.should_log():
                progress.log_progress({"retries": checkpoint.retry_count})

        progress.log_summary()
        return Outcome.success()

    def _process_item(self, job: JobSpec, item_id: str, checkpoint: Checkpoint) -> Outcome:
        try:
            thread = self.provider.fetch_thread(item_id)
        except Exception as exc:  # noqa: BLE001
            return classify_error(exc)

        partition_cfg = self.config.partition
        chunks = partition(
            thread.post,
            thread.comments,
            partition_cfg.max_chunk_size,
            extract_from_post=partition_cfg.extract_from_post,
            max_chunk_chars=partition_cfg.max_chunk_chars,
            max_chunk_tokens=partition_cfg.max_chunk_tokens,
        )
        report = self.dispatcher.dispatch(chunks)
        if self.monitor is not None:
            self.monitor.record_chunk_results(job.id, report)

        tolerance = self.config.dispatch.max_chunk_failure_ratio
        if not report.within_tolerance(tolerance):
            return Outcome.transient(
                f"Item {item_id}: {report.failed}/{report.attempted} chunks failed "
                f"(tolerance {tolerance:.0%})",
                "extraction_tolerance",
                retry_after=report.retry_after,
            )

        try:
            merged = self.merge_engine.merge(report.results)
        except Exception as exc:  # noqa: BLE001
            outcome = classify_error(exc)
            logger.warning("Merging item %s of job %s failed: %s", item_id, job.id, outcome.message)
            return outcome

        checkpoint.bump("chunks_total", report.attempted)
        checkpoint.bump("chunks_succeeded", report.succeeded)
        checkpoint.bump("chunk_time_ms", sum(report.timings_ms))
        checkpoint.bump("mentions_new", merged.new_mentions)
        checkpoint.bump("mentions_updated", merged.updated_mentions)
        checkpoint.chunk_sizes.extend(report.size_distribution)
        logger.debug(
            "Item %s: %d chunks, %d new mentions, %d entities updated",
            item_id,
            report.attempted,
            merged.new_mentions,
            len(merged.updated_entities),
        )
        return Outcome.success()

    # ------------------------------------------------------------ helpers

    def _move(self, job: JobSpec, status: JobStatus) -> JobSpec:
        if job.status is status:
            return job
        moved = job.with_status(status)
        logger.info("Job %s: %s -> %s", job.id, job.status.value, status.value)
        if self.job_store is not None:
            self.job_store.save(moved)
        return moved

    def _cancel_requested(self, job: JobSpec, cancel_event: Optional[threading.Event]) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        return self.job_store is not None and self.job_store.is_cancel_requested(job.id)

    def _wait_for_backoff(self, checkpoint: Checkpoint) -> None:
        if checkpoint.backoff_until is None:
            return
        remaining = (checkpoint.backoff_until - self._clock()).total_seconds()
        if remaining > 0:
            logger.info("Job %s still backing off, waiting %.1fs", checkpoint.job_id, remaining)
            self._sleep(remaining)

    def _load_checkpoint(self, job: JobSpec) -> Optional[Checkpoint]:
        """Load the checkpoint, retrying transient store failures within the job's retry budget."""

        retry_cfg = self.config.job_retry
        for attempt in range(retry_cfg.max_retries + 1):
            try:
                return self.checkpoint_store.load(job.id)
            except CheckpointCorruptError:
                raise
            except Exception as exc:  # noqa: BLE001
                outcome = classify_error(exc)
                if outcome.kind is OutcomeKind.PERMANENT or attempt == retry_cfg.max_retries:
                    raise
                delay = compute_backoff_delay(
                    attempt, retry_cfg.base_delay_seconds, retry_cfg.max_delay_seconds, self._rng
                )
                logger.warning(
                    "Loading checkpoint for job %s failed (%s); retrying in %.1fs", job.id, outcome.message, delay
                )
                self._sleep(delay)
        return None

    def _save_checkpoint(self, checkpoint: Checkpoint) -> None:
        self.checkpoint_store.save(checkpoint)

    def _try_save_checkpoint(self, checkpoint: Checkpoint) -> Optional[Outcome]:
        """Save ``checkpoint``; a failed write comes back as an outcome instead of raising."""

        try:
            self._save_checkpoint(checkpoint)
        except Exception as exc:  # noqa: BLE001
            outcome = classify_error(exc)
            logger.warning("Saving checkpoint for job %s failed: %s", checkpoint.job_id, outcome.message)
            return outcome
        return None

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return (time.monotonic() - started) * 1000

    @staticmethod
    def _summary(checkpoint: Checkpoint, total_time_ms: float) -> JobSummary:
        counts = checkpoint.aggregate_counts
        chunks_total = int(counts.get("chunks_total", 0))
        succeeded = counts.get("chunks_succeeded", 0)
        return JobSummary(
            job_id=checkpoint.job_id,
            items_processed=checkpoint.items_processed_count,
            chunks_total=chunks_total,
            chunk_size_distribution=list(checkpoint.chunk_sizes),
            success_rate=(succeeded / chunks_total * 100) if chunks_total else 100.0,
            avg_chunk_time_ms=(counts.get("chunk_time_ms", 0.0) / chunks_total) if chunks_total else 0.0,
            total_time_ms=total_time_ms,
        )

    def _finish(
        self,
        job: JobSpec,
        status: JobStatus,
        checkpoint: Optional[Checkpoint],
        started: float,
        tracker: FailureTracker,
        skipped: List[str],
        *,
        error: Optional[str] = None,
    ) -> JobRunResult:
        job = self._move(job, status)
        if checkpoint is not None:
            total_ms = self._elapsed_ms(started)
            checkpoint.status = status
            checkpoint.aggregate_counts["elapsed_ms"] = total_ms
            checkpoint.updated_at = self._clock()
            saved = self._try_save_checkpoint(checkpoint)
            if saved is not None:
                # The job record still goes terminal; a rerun finds nothing left to do
                tracker.record_failure("checkpoint", job.id, saved.message, category=saved.category)
            summary = self._summary(checkpoint, total_ms)
            retry_count = checkpoint.retry_count
        else:
            summary = JobSummary(job_id=job.id, total_time_ms=(time.monotonic() - started) * 1000)
            retry_count = 0

        if error:
            tracker.record_failure("job", job.id, error, category=categorize_error(error))
        if self.monitor is not None:
            self.monitor.record_job_end(job, status, summary=summary, error=error, at=self._clock())

        logger.info("Job summary: %s", json.dumps(summary.to_dict()))
        return JobRunResult(
            job=job,
            summary=summary,
            retry_count=retry_count,
            skipped_items=skipped,
            failures=tracker.get_summary(),
            error=error,
        )

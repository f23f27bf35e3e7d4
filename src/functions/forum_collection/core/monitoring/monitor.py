"""
Metrics aggregation and alerting for collection jobs.

The monitor only observes: it never retries, cancels or reschedules work.
Alerts are logged at ERROR and handed to an optional sink (e.g. a webhook).
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from ..contracts.config import MonitorConfig
from ..contracts.job import JobSpec, JobStatus, JobSummary
from ..dispatch.dispatcher import DispatchReport

logger = logging.getLogger(__name__)


def categorize_error(error: Optional[str]) -> str:
    """Bucket an error message into a failure-reason category."""
    if not error:
        return "unknown_error"
    lower = error.lower()
    if "rate limit" in lower or "429" in lower:
        return "rate_limit"
    if "network" in lower or "timeout" in lower or "timed out" in lower or "connection" in lower:
        return "network_error"
    if "authentication" in lower or "unauthorized" in lower or "forbidden" in lower:
        return "auth_error"
    if "forum" in lower or "reddit" in lower or "source" in lower:
        return "source_api_error"
    if "database" in lower or "supabase" in lower or "checkpoint" in lower:
        return "database_error"
    if "memory" in lower:
        return "memory_error"
    return "unknown_error"


@dataclass
class JobMetricsWindow:
    """Rolling chunk counters and timings."""

    attempted: int = 0
    succeeded: int = 0
    timings: Deque[float] = field(default_factory=lambda: deque(maxlen=10_000))

    def record(self, report: DispatchReport) -> None:
        self.attempted += report.attempted
        self.succeeded += report.succeeded
        self.timings.extend(report.timings_ms)

    @property
    def success_rate(self) -> float:
        if self.attempted == 0:
            return 100.0
        return self.succeeded / self.attempted * 100

    def to_dict(self) -> Dict[str, Any]:
        timings = list(self.timings)
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "success_rate": round(self.success_rate, 4),
            "min_chunk_ms": round(min(timings), 3) if timings else 0.0,
            "max_chunk_ms": round(max(timings), 3) if timings else 0.0,
            "avg_chunk_ms": round(sum(timings) / len(timings), 3) if timings else 0.0,
        }


@dataclass
class JobRecord:
    job_id: str
    kind: str
    source: str
    started_at: datetime
    status: JobStatus = JobStatus.RUNNING
    ended_at: Optional[datetime] = None
    attempts: int = 1
    items_processed: int = 0
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()


@dataclass(frozen=True)
class Alert:
    alert_type: str
    message: str
    raised_at: datetime
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["raised_at"] = self.raised_at.isoformat()
        return data


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Monitor:
    """Tracks chunk metrics per job and globally, job outcomes, and alerts."""

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        *,
        alert_sink: Optional[Callable[[Alert], None]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config or MonitorConfig()
        self._alert_sink = alert_sink
        self._clock = clock
        self._lock = threading.Lock()
        self._global = JobMetricsWindow()
        self._per_job: Dict[str, JobMetricsWindow] = {}
        self._jobs: Dict[str, JobRecord] = {}
        self._history: Deque[JobRecord] = deque(maxlen=self.config.history_limit)
        self._last_alerts: Dict[str, datetime] = {}
        self._alerts: Deque[Alert] = deque(maxlen=200)

    # ---------------------------------------------------------------- record

    def record_job_start(self, job: JobSpec, at: Optional[datetime] = None) -> None:
        at = at or self._clock()
        with self._lock:
            record = self._jobs.get(job.id)
            if record is None:
                self._jobs[job.id] = JobRecord(
                    job_id=job.id,
                    kind=job.kind.value,
                    source=job.target.source,
                    started_at=at,
                )
            else:
                record.status = JobStatus.RUNNING
        logger.debug("Job %s started", job.id)

    def record_chunk_results(self, job_id: str, report: DispatchReport) -> None:
        with self._lock:
            self._global.record(report)
            self._per_job.setdefault(job_id, JobMetricsWindow()).record(report)

    def record_job_retry(self, job_id: str, attempt: int, error: str, next_retry_at: Optional[datetime] = None) -> None:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is not None:
                record.status = JobStatus.RETRYING
                record.attempts = attempt + 1
                record.error = error
        logger.info(
            "Job %s retry %d scheduled for %s: %s",
            job_id,
            attempt,
            next_retry_at.isoformat() if next_retry_at else "now",
            error,
        )

    def record_job_end(
        self,
        job: JobSpec,
        status: JobStatus,
        *,
        summary: Optional[JobSummary] = None,
        error: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        at = at or self._clock()
        with self._lock:
            record = self._jobs.get(job.id)
            if record is None:
                record = JobRecord(job_id=job.id, kind=job.kind.value, source=job.target.source, started_at=at)
                self._jobs[job.id] = record
            record.status = status
            record.ended_at = at
            record.error = error
            if summary is not None:
                record.items_processed = summary.items_processed
            self._history.append(record)

        logger.info(
            "Job %s finished with status %s%s",
            job.id,
            status.value,
            f" ({error})" if error else "",
        )
        self._check_alerts(job, record)

    # ---------------------------------------------------------------- alerts

    def _trigger(self, alert_type: str, message: str, context: Dict[str, Any], *, dedupe_key: str = "") -> Optional[Alert]:
        now = self._clock()
        key = f"{alert_type}:{dedupe_key}" if dedupe_key else alert_type
        cooldown = timedelta(seconds=self.config.alert_cooldown_seconds)
        with self._lock:
            last = self._last_alerts.get(key)
            if last is not None and now - last < cooldown:
                return None
            self._last_alerts[key] = now
            alert = Alert(alert_type=alert_type, message=message, raised_at=now, context=context)
            self._alerts.append(alert)

        logger.error("Collection job alert: %s - %s %s", alert_type, message, context)
        if self._alert_sink is not None:
            try:
                self._alert_sink(alert)
            except Exception:  # noqa: BLE001
                logger.exception("Alert sink failed for %s", alert_type)
        return alert

    def _check_alerts(self, job: JobSpec, record: JobRecord) -> None:
        cfg = self.config
        if record.status is JobStatus.FAILED:
            self._trigger(
                "job_failed",
                f"Job {job.id} failed",
                {"job_id": job.id, "target": job.target_key, "error": record.error, "category": categorize_error(record.error)},
                dedupe_key=job.target_key,
            )
            failures = self.consecutive_failures()
            if failures >= cfg.consecutive_failure_threshold:
                self._trigger(
                    "consecutive_failures",
                    f"{failures} consecutive job failures",
                    {"consecutive_failures": failures, "last_job_id": job.id, "last_error": record.error},
                )

        duration = record.duration_seconds
        if duration is not None and duration > cfg.slow_job_minutes * 60:
            self._trigger(
                "slow_job",
                f"Job {job.id} took {duration:.0f}s",
                {"job_id": job.id, "duration_seconds": duration},
            )

        finished = self._window()
        if len(finished) >= cfg.min_jobs_for_rate_alert:
            rate = self.window_success_rate()
            if rate < cfg.success_rate_threshold:
                self._trigger(
                    "low_success_rate",
                    f"Job success rate {rate:.1f}% below {cfg.success_rate_threshold:.0f}%",
                    {"success_rate": rate, "window": len(finished)},
                )

    # --------------------------------------------------------------- queries

    def _window(self) -> List[JobRecord]:
        with self._lock:
            finished = [r for r in self._history if r.status in (JobStatus.COMPLETED, JobStatus.FAILED)]
        return finished[-self.config.window_size:]

    def window_success_rate(self) -> float:
        window = self._window()
        if not window:
            return 100.0
        completed = sum(1 for r in window if r.status is JobStatus.COMPLETED)
        return completed / len(window) * 100

    def consecutive_failures(self) -> int:
        count = 0
        for record in reversed(self._window()):
            if record.status is not JobStatus.FAILED:
                break
            count += 1
        return count

    def detect_stalled_jobs(self, now: Optional[datetime] = None) -> List[JobRecord]:
        now = now or self._clock()
        limit = timedelta(minutes=self.config.stalled_job_minutes)
        with self._lock:
            return [
                record
                for record in self._jobs.values()
                if record.status in (JobStatus.RUNNING, JobStatus.RETRYING) and now - record.started_at > limit
            ]

    def job_metrics(self, job_id: str) -> Dict[str, Any]:
        with self._lock:
            window = self._per_job.get(job_id)
            return window.to_dict() if window else JobMetricsWindow().to_dict()

    def performance_metrics(self) -> Dict[str, Any]:
        window = self._window()
        durations = [r.duration_seconds for r in window if r.duration_seconds is not None]
        failure_reasons: Dict[str, int] = {}
        for record in window:
            if record.status is JobStatus.FAILED:
                category = categorize_error(record.error)
                failure_reasons[category] = failure_reasons.get(category, 0) + 1
        with self._lock:
            chunks = self._global.to_dict()
        return {
            "jobs_in_window": len(window),
            "job_success_rate": round(self.window_success_rate(), 4),
            "average_job_seconds": round(sum(durations) / len(durations), 3) if durations else 0.0,
            "peak_job_seconds": round(max(durations), 3) if durations else 0.0,
            "failure_reasons": failure_reasons,
            "chunks": chunks,
        }

    def health_status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """``healthy`` / ``degraded`` / ``unhealthy`` with the issues behind it."""
        cfg = self.config
        metrics = self.performance_metrics()
        issues: List[str] = []
        status = "healthy"

        if metrics["jobs_in_window"] and metrics["job_success_rate"] < cfg.success_rate_threshold:
            issues.append(f"Low success rate: {metrics['job_success_rate']:.1f}%")
            status = "degraded"
        if metrics["average_job_seconds"] > cfg.slow_job_minutes * 60:
            issues.append(f"High job duration: {metrics['average_job_seconds']:.1f}s")
            status = "degraded"

        stalled = self.detect_stalled_jobs(now)
        if stalled:
            issues.append(f"{len(stalled)} stalled jobs detected")
            if status == "healthy":
                status = "degraded"
            if len(stalled) > 2:
                status = "unhealthy"

        failures = self.consecutive_failures()
        if failures >= cfg.consecutive_failure_threshold:
            issues.append(f"{failures} consecutive failures")
            status = "unhealthy"

        with self._lock:
            running = sum(
                1 for r in self._jobs.values() if r.status in (JobStatus.RUNNING, JobStatus.RETRYING)
            )
        return {"status": status, "issues": issues, "running_jobs": running, "metrics": metrics}

    @property
    def alerts(self) -> List[Alert]:
        with self._lock:
            return list(self._alerts)

    def cleanup(self, now: Optional[datetime] = None, retention: timedelta = timedelta(hours=48)) -> int:
        """Forget finished jobs older than ``retention``. Returns how many were dropped."""
        now = now or self._clock()
        cutoff = now - retention
        removed = 0
        with self._lock:
            for job_id in list(self._jobs):
                record = self._jobs[job_id]
                if record.ended_at is not None and record.ended_at < cutoff and record.status.is_terminal:
                    del self._jobs[job_id]
                    self._per_job.pop(job_id, None)
                    removed += 1
            kept = [r for r in self._history if r.ended_at is None or r.ended_at >= cutoff]
            self._history = deque(kept, maxlen=self.config.history_limit)
        if removed:
            logger.info("Cleaned up %d old job metrics", removed)
        return removed

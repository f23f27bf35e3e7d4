"""Run chunks through the extraction gateway under a concurrency limit."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence

from src.shared.batch.retry import compute_backoff_delay
from ..contracts.extraction import Chunk, ExtractionResult, OutcomeKind
from ..extraction.gateway import ExtractionGateway, classify_extraction_error
from .worker_pool import BoundedWorkerPool

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    """Terminal per-chunk outcomes of one dispatch round, in chunk order."""

    results: List[ExtractionResult] = field(default_factory=list)
    total_duration_ms: float = 0.0

    @property
    def attempted(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.succeeded)

    @property
    def failed(self) -> int:
        return self.attempted - self.succeeded

    @property
    def success_rate(self) -> float:
        """Percent of chunks that succeeded; 100 when nothing was dispatched."""
        if not self.results:
            return 100.0
        return self.succeeded / self.attempted * 100

    @property
    def failure_ratio(self) -> float:
        if not self.results:
            return 0.0
        return self.failed / self.attempted

    def within_tolerance(self, max_failure_ratio: float) -> bool:
        return self.failure_ratio <= max_failure_ratio

    @property
    def timings_ms(self) -> List[float]:
        return [result.timing_ms for result in self.results]

    @property
    def size_distribution(self) -> List[int]:
        return [result.chunk_size for result in self.results]

    @property
    def retry_after(self) -> Optional[float]:
        """Largest retry-after hint among failed chunks, if any."""
        hints = [
            result.outcome.retry_after
            for result in self.results
            if not result.succeeded and result.outcome.retry_after is not None
        ]
        return max(hints) if hints else None

    @property
    def failure_categories(self) -> Dict[str, int]:
        return dict(Counter(result.outcome.category for result in self.results if not result.succeeded))

    @property
    def has_transient_failures(self) -> bool:
        return any(result.outcome.kind is OutcomeKind.TRANSIENT for result in self.results)

    def to_metrics(self) -> Dict[str, object]:
        timings = self.timings_ms
        return {
            "chunks_processed": self.attempted,
            "chunks_succeeded": self.succeeded,
            "success_rate": self.success_rate,
            "total_duration_ms": round(self.total_duration_ms, 3),
            "average_chunk_time_ms": round(sum(timings) / len(timings), 3) if timings else 0.0,
            "fastest_chunk_ms": round(min(timings), 3) if timings else 0.0,
            "slowest_chunk_ms": round(max(timings), 3) if timings else 0.0,
            "chunk_size_distribution": self.size_distribution,
        }


class ConcurrentDispatcher:
    """Bounded worker pool around an :class:`ExtractionGateway`.

    Each chunk gets ``retry_budget`` extra attempts for transient failures.
    A rate-limit answer with a retry-after hint pauses every worker before its
    next gateway call until the hint has elapsed; calls already in flight are
    left alone.
    """

    def __init__(
        self,
        gateway: ExtractionGateway,
        *,
        concurrency_limit: int = 16,
        retry_budget: int = 2,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._gateway = gateway
        self._pool = BoundedWorkerPool(concurrency_limit, thread_name_prefix="chunk")
        self._retry_budget = retry_budget
        self._retry_base_seconds = retry_base_seconds
        self._retry_max_seconds = retry_max_seconds
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._backpressure_until = 0.0
        self._active = 0
        self._pending = 0

    @property
    def concurrency_limit(self) -> int:
        return self._pool.max_workers

    def queue_status(self) -> Dict[str, object]:
        with self._lock:
            active, pending = self._active, self._pending
            paused_for = max(self._backpressure_until - self._clock(), 0.0)
        return {
            "active": active,
            "pending": pending,
            "concurrency_limit": self.concurrency_limit,
            "utilization": active / self.concurrency_limit * 100,
            "backpressure_seconds": round(paused_for, 3),
        }

    def dispatch(self, chunks: Sequence[Chunk]) -> DispatchReport:
        """Return once every chunk reached success or an exhausted-retries failure."""

        started = self._clock()
        with self._lock:
            self._pending += len(chunks)
        results = self._pool.map_ordered(list(chunks), self._run_chunk)
        report = DispatchReport(results=results, total_duration_ms=(self._clock() - started) * 1000)
        if chunks:
            logger.info(
                "Dispatched %d chunks: %d succeeded (%.2f%%) in %.0fms",
                report.attempted,
                report.succeeded,
                report.success_rate,
                report.total_duration_ms,
            )
        return report

    def _note_backpressure(self, retry_after: Optional[float]) -> None:
        if not retry_after:
            return
        with self._lock:
            until = self._clock() + retry_after
            if until > self._backpressure_until:
                self._backpressure_until = until
                logger.warning("Extraction rate limited; pausing new chunk calls for %.1fs", retry_after)

    def _wait_for_backpressure(self) -> None:
        while True:
            with self._lock:
                remaining = self._backpressure_until - self._clock()
            if remaining <= 0:
                return
            self._sleep(remaining)

    def _backoff(self, attempt: int) -> float:
        with self._lock:
            return compute_backoff_delay(attempt, self._retry_base_seconds, self._retry_max_seconds, self._rng)

    def _call_gateway(self, chunk: Chunk) -> ExtractionResult:
        try:
            return self._gateway.extract(chunk)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Gateway raised for chunk %s", chunk.chunk_id)
            return ExtractionResult(chunk_id=chunk.chunk_id, outcome=classify_extraction_error(exc))

    def _run_chunk(self, chunk: Chunk) -> ExtractionResult:
        started = self._clock()
        attempt = 0
        first = True
        while True:
            self._wait_for_backpressure()
            with self._lock:
                if first:
                    self._pending -= 1
                    first = False
                self._active += 1
            try:
                result = self._call_gateway(chunk)
            finally:
                with self._lock:
                    self._active -= 1

            outcome = result.outcome
            if outcome.kind is OutcomeKind.TRANSIENT and attempt < self._retry_budget:
                self._note_backpressure(outcome.retry_after)
                delay = self._backoff(attempt)
                logger.debug(
                    "Chunk %s transient failure (%s), retry %d/%d in %.2fs",
                    chunk.chunk_id,
                    outcome.category,
                    attempt + 1,
                    self._retry_budget,
                    delay,
                )
                self._sleep(delay)
                attempt += 1
                continue

            if outcome.kind is OutcomeKind.TRANSIENT:
                self._note_backpressure(outcome.retry_after)
            if not result.succeeded:
                logger.warning(
                    "Chunk %s failed after %d attempt(s): %s",
                    chunk.chunk_id,
                    attempt + 1,
                    outcome.message,
                )
            return replace(
                result,
                attempts=attempt + 1,
                timing_ms=(self._clock() - started) * 1000,
                chunk_size=chunk.size,
            )

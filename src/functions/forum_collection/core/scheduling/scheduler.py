"""Decides which collection jobs to start on each tick.

Every job passes through ``LiveJobRegistry.claim`` before it is returned, so a
target that already has a live job (from this tick, an earlier tick, or another
scheduler process sharing the registry) is never emitted twice.
"""

from __future__ import annotations

import logging
import re
import threading
import uuid
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, Iterable, List, Optional, Sequence

from ..contracts.config import CollectionConfig, ForumSourceConfig, safety_buffer_interval_days
from ..contracts.extraction import Entity
from ..contracts.job import JobKind, JobSpec, JobTarget, build_job_id
from ..db.job_store import JobStore
from ..jobs.registry import LiveJobRegistry
from .priority import PriorityScorer

logger = logging.getLogger(__name__)

_SLUG = re.compile(r"[^a-z0-9]+")


def _slug(value: str) -> str:
    return _SLUG.sub("_", value.lower()).strip("_") or "entity"


class Scheduler:
    def __init__(
        self,
        config: CollectionConfig,
        registry: LiveJobRegistry,
        entity_provider: Callable[[], Iterable[Entity]],
        *,
        scorer: Optional[PriorityScorer] = None,
        job_store: Optional[JobStore] = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._entity_provider = entity_provider
        self._scorer = scorer or PriorityScorer(config.priority)
        self._job_store = job_store
        self._lock = threading.Lock()
        self._manual: Deque[JobSpec] = deque()
        self._last_success: Dict[str, datetime] = {}
        self._posts_per_day: Dict[str, float] = {
            source.name: source.average_posts_per_day
            for source in config.sources
            if source.average_posts_per_day
        }
        self._first_tick_at: Optional[datetime] = None
        self._last_enrichment_at: Optional[datetime] = None

    # ------------------------------------------------------------------ state

    def record_run_success(self, source: str, at: datetime) -> None:
        with self._lock:
            previous = self._last_success.get(source)
            if previous is None or at > previous:
                self._last_success[source] = at

    def last_success(self, source: str) -> Optional[datetime]:
        with self._lock:
            return self._last_success.get(source)

    def update_posting_volume(self, source: str, observed_posts_per_day: float) -> float:
        """Blend a new posts/day observation into the running estimate and return it."""

        if observed_posts_per_day <= 0:
            logger.warning("Ignoring non-positive posting volume %.2f for %s", observed_posts_per_day, source)
            return self._posts_per_day.get(source, 0.0)
        alpha = self._config.scheduler.volume_smoothing
        with self._lock:
            previous = self._posts_per_day.get(source)
            blended = observed_posts_per_day if previous is None else previous * (1 - alpha) + observed_posts_per_day * alpha
            self._posts_per_day[source] = blended
        logger.info(
            "Posting volume for %s now %.1f posts/day (interval %.1f days)",
            source,
            blended,
            safety_buffer_interval_days(blended),
        )
        return blended

    def interval_for(self, source: ForumSourceConfig) -> timedelta:
        if source.interval_hours is not None:
            return timedelta(hours=source.interval_hours)
        with self._lock:
            posts_per_day = self._posts_per_day.get(source.name)
        return timedelta(days=safety_buffer_interval_days(posts_per_day))

    # ----------------------------------------------------------------- manual

    def request_manual(
        self,
        source: str,
        now: datetime,
        *,
        item_ids: Sequence[str] = (),
        keyword: Optional[str] = None,
    ) -> JobSpec:
        """Queue an operator job; it is claimed and emitted on the next tick."""

        spec = JobSpec(
            id=build_job_id(JobKind.MANUAL, [source], now, suffix=uuid.uuid4().hex[:8]),
            kind=JobKind.MANUAL,
            target=JobTarget(source=source, keyword=keyword, item_ids=list(item_ids)),
            priority=self._config.scheduler.manual_priority,
            created_at=now,
        )
        with self._lock:
            self._manual.append(spec)
        logger.info("Queued manual job %s for %s", spec.id, source)
        return spec

    def pending_manual(self) -> List[JobSpec]:
        with self._lock:
            return list(self._manual)

    # ------------------------------------------------------------------- tick

    def _claim(self, spec: JobSpec, claimed: List[JobSpec]) -> bool:
        if self._registry.claim(spec.target_key, spec.id):
            claimed.append(spec)
            return True
        logger.debug("Target %s busy (held by %s); not emitting %s", spec.target_key, self._registry.holder(spec.target_key), spec.id)
        return False

    def _release(self, claimed: Sequence[JobSpec]) -> None:
        for spec in claimed:
            try:
                self._registry.release(spec.target_key, spec.id)
            except Exception:  # noqa: BLE001
                logger.exception("Could not release %s for %s after a failed tick", spec.target_key, spec.id)

    def _manual_jobs(self, claimed: List[JobSpec]) -> List[JobSpec]:
        with self._lock:
            queued = list(self._manual)
            self._manual.clear()
        emitted: List[JobSpec] = []
        waiting: List[JobSpec] = []
        try:
            for spec in queued:
                (emitted if self._claim(spec, claimed) else waiting).append(spec)
        except Exception:
            with self._lock:
                self._manual.extendleft(reversed(queued))
            raise
        if waiting:
            with self._lock:
                # Keep original order ahead of anything queued meanwhile
                self._manual.extendleft(reversed(waiting))
        return emitted

    def _chronological_jobs(self, now: datetime, claimed: List[JobSpec]) -> List[JobSpec]:
        emitted: List[JobSpec] = []
        for source in self._config.enabled_sources():
            last = self.last_success(source.name)
            if last is not None and now - last < self.interval_for(source):
                continue
            spec = JobSpec(
                id=build_job_id(JobKind.CHRONOLOGICAL, [source.name], now),
                kind=JobKind.CHRONOLOGICAL,
                target=JobTarget(source=source.name, since=last),
                priority=self._config.scheduler.chronological_priority,
                created_at=now,
            )
            if self._claim(spec, claimed):
                emitted.append(spec)
        return emitted

    def _enrichment_due(self, now: datetime) -> bool:
        cfg = self._config.scheduler
        with self._lock:
            if self._first_tick_at is None:
                self._first_tick_at = now
            if self._last_enrichment_at is None:
                return now - self._first_tick_at >= timedelta(days=cfg.enrichment_offset_days)
            return now - self._last_enrichment_at >= timedelta(days=cfg.enrichment_interval_days)

    def _keyword_jobs(self, now: datetime, claimed: List[JobSpec]) -> List[JobSpec]:
        if not self._enrichment_due(now):
            return []
        sources = self._config.enabled_sources()
        ranked = self._scorer.top_k(self._entity_provider(), self._config.scheduler.top_k, now)
        emitted: List[JobSpec] = []
        for scored in ranked:
            entity = scored.entity
            for source in sources:
                spec = JobSpec(
                    id=build_job_id(JobKind.KEYWORD_SEARCH, [source.name], now, suffix=_slug(entity.key)),
                    kind=JobKind.KEYWORD_SEARCH,
                    target=JobTarget(source=source.name, keyword=entity.name, entity_key=entity.key),
                    priority=int(round(scored.score)),
                    created_at=now,
                )
                if self._claim(spec, claimed):
                    emitted.append(spec)
        with self._lock:
            self._last_enrichment_at = now
        logger.info("Enrichment cycle: %d entities selected, %d keyword jobs emitted", len(ranked), len(emitted))
        return emitted

    def tick(self, now: datetime) -> List[JobSpec]:
        """Return newly claimed jobs: manual jobs first, then by priority.

        A tick is all or nothing. If it raises, every claim it took is
        released, claimed manual jobs go back to the front of the queue and the
        enrichment clock is not advanced.
        """

        claimed: List[JobSpec] = []
        manual: List[JobSpec] = []
        with self._lock:
            last_enrichment = self._last_enrichment_at
        try:
            manual = self._manual_jobs(claimed)
            others = self._chronological_jobs(now, claimed) + self._keyword_jobs(now, claimed)
            others.sort(key=lambda spec: -spec.priority)
            emitted = manual + others
            if self._job_store is not None:
                for spec in emitted:
                    self._job_store.save(spec)
        except Exception:
            logger.error("Tick %s failed; releasing %d claimed targets", now.isoformat(), len(claimed))
            self._release(claimed)
            with self._lock:
                self._manual.extendleft(reversed(manual))
                self._last_enrichment_at = last_enrichment
            raise
        if emitted:
            logger.info(
                "Tick %s emitted %d jobs (%d manual)",
                now.isoformat(),
                len(emitted),
                len(manual),
            )
        return emitted

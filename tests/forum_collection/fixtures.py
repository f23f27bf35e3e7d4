"""Shared fakes for forum collection tests."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from postgrest.exceptions import APIError

from src.functions.forum_collection.core.contracts.config import (
    CollectionConfig,
    DispatchConfig,
    ForumSourceConfig,
    JobRetryConfig,
    PartitionConfig,
)
from src.functions.forum_collection.core.contracts.extraction import (
    Chunk,
    ExtractionResult,
    Mention,
    Outcome,
)
from src.functions.forum_collection.core.contracts.job import JobKind, JobSpec, JobTarget
from src.functions.forum_collection.core.contracts.thread import Comment, ForumThread, Post
from src.functions.forum_collection.core.db.checkpoint_store import InMemoryCheckpointStore
from src.functions.forum_collection.core.db.job_store import InMemoryJobStore
from src.functions.forum_collection.core.db.mention_store import InMemoryMentionStore
from src.functions.forum_collection.core.dispatch import ConcurrentDispatcher
from src.functions.forum_collection.core.extraction import ExtractionGateway
from src.functions.forum_collection.core.jobs.state_machine import CollectionJobRunner
from src.functions.forum_collection.core.merge import MergeEngine, normalize_key
from src.functions.forum_collection.core.monitoring import Monitor
from src.functions.forum_collection.core.sources import ContentProvider

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
RESTAURANTS = ["Joe's Pizza", "Katz's Delicatessen", "Lucali", "Di Fara"]


class FakeClock:
    def __init__(self, start: datetime = BASE_TIME):
        self.now = start
        self.sleeps: List[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now = self.now + timedelta(seconds=seconds)

    def advance(self, **kwargs) -> None:
        with self._lock:
            self.now = self.now + timedelta(**kwargs)


def make_post(post_id: str = "p1", source: str = "FoodNYC") -> Post:
    return Post(
        id=post_id,
        source=source,
        title=f"Best slice near {post_id}?",
        body="Looking for recommendations",
        score=10,
        created_at=BASE_TIME,
    )


def comment_body(index: int) -> str:
    return f"Loved {RESTAURANTS[index % len(RESTAURANTS)]}"


def chain_comments(post_id: str, sizes: Sequence[int], prefix: str = "c") -> List[Comment]:
    """One root per size; each root carries a straight reply chain of ``size`` comments.

    Roots get descending scores so partition order follows ``sizes``.
    """
    comments: List[Comment] = []
    counter = 0
    for root_index, size in enumerate(sizes):
        parent: Optional[str] = f"t3_{post_id}"
        for depth in range(size):
            comment_id = f"{prefix}{root_index}_{depth}"
            comments.append(
                Comment(
                    id=comment_id,
                    parent_id=parent if depth == 0 else f"t1_{parent}",
                    body=comment_body(counter),
                    score=1000 - root_index if depth == 0 else 1,
                    created_at=BASE_TIME + timedelta(minutes=counter),
                )
            )
            parent = comment_id
            counter += 1
    return comments


def make_thread(post_id: str, sizes: Sequence[int], source: str = "FoodNYC") -> ForumThread:
    return ForumThread(post=make_post(post_id, source), comments=tuple(chain_comments(post_id, sizes)))


def mentions_for_chunk(chunk: Chunk) -> List[Mention]:
    """Deterministic mentions: one per comment plus one for the post on every chunk."""
    mentions = [
        Mention(
            source_id=chunk.post.id,
            source_type="post",
            restaurant_key=normalize_key("Joe's Pizza"),
            dish_key=normalize_key("Margherita"),
            restaurant_name="Joe's Pizza",
            dish_name="Margherita",
            attributes=("cheap",),
            categories=("pizza",),
            mentioned_at=chunk.post.created_at,
        )
    ]
    for comment in chunk.comments:
        name = comment.body.split("Loved ", 1)[1]
        mentions.append(
            Mention(
                source_id=comment.id,
                source_type="comment",
                restaurant_key=normalize_key(name),
                restaurant_name=name,
                mentioned_at=comment.created_at,
            )
        )
    return mentions


class FakeGateway(ExtractionGateway):
    """Succeeds unless ``outcomes`` has queued failures for a chunk id."""

    def __init__(self, outcomes: Optional[Dict[str, List[Outcome]]] = None, delay: Optional[Callable[[], None]] = None):
        self.outcomes = {key: list(value) for key, value in (outcomes or {}).items()}
        self.calls: List[str] = []
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def extract(self, chunk: Chunk) -> ExtractionResult:
        with self._lock:
            self.calls.append(chunk.chunk_id)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            queued = self.outcomes.get(chunk.chunk_id)
            outcome = queued.pop(0) if queued else Outcome.success()
        try:
            if self.delay is not None:
                self.delay()
        finally:
            with self._lock:
                self.active -= 1
        if not outcome.ok:
            return ExtractionResult(chunk_id=chunk.chunk_id, outcome=outcome, chunk_size=chunk.size)
        return ExtractionResult(
            chunk_id=chunk.chunk_id,
            outcome=outcome,
            mentions=tuple(mentions_for_chunk(chunk)),
            timing_ms=1.0,
            chunk_size=chunk.size,
        )


class FakeContentProvider(ContentProvider):
    """Serves threads from a dict; ``errors`` queues exceptions per post id."""

    def __init__(
        self,
        threads: Dict[str, ForumThread],
        listing: Optional[List[str]] = None,
        errors: Optional[Dict[str, List[BaseException]]] = None,
        search_results: Optional[Dict[str, List[str]]] = None,
    ):
        self.threads = threads
        self.listing = list(listing if listing is not None else threads)
        self.errors = {key: list(value) for key, value in (errors or {}).items()}
        self.search_results = search_results or {}
        self.fetched: List[str] = []
        self.list_calls = 0
        self.on_fetch: Optional[Callable[[str], None]] = None

    def list_new_posts(self, source: str, since: Optional[datetime], limit: int) -> List[str]:
        self.list_calls += 1
        return self.listing[:limit]

    def search_posts(self, source: str, keyword: str, limit: int) -> List[str]:
        self.list_calls += 1
        return list(self.search_results.get(keyword, []))[:limit]

    def fetch_thread(self, post_id: str) -> ForumThread:
        if self.on_fetch is not None:
            self.on_fetch(post_id)
        queued = self.errors.get(post_id)
        if queued:
            raise queued.pop(0)
        self.fetched.append(post_id)
        return self.threads[post_id]


def make_config(
    *,
    max_chunk_size: int = 30,
    concurrency: int = 4,
    max_retries: int = 3,
    chunk_retry_budget: int = 0,
    max_chunk_failure_ratio: float = 0.05,
    sources: Iterable[str] = ("FoodNYC",),
) -> CollectionConfig:
    return CollectionConfig(
        partition=PartitionConfig(max_chunk_size=max_chunk_size),
        dispatch=DispatchConfig(
            concurrency_limit=concurrency,
            chunk_retry_budget=chunk_retry_budget,
            max_chunk_failure_ratio=max_chunk_failure_ratio,
        ),
        job_retry=JobRetryConfig(max_retries=max_retries, base_delay_seconds=5, max_delay_seconds=900),
        sources=[ForumSourceConfig(name=name, average_posts_per_day=50) for name in sources],
        storage_backend="memory",
    )


def make_job(job_id: str = "chronological-foodnyc-1", kind: JobKind = JobKind.CHRONOLOGICAL, **target) -> JobSpec:
    target.setdefault("source", "FoodNYC")
    return JobSpec(id=job_id, kind=kind, target=JobTarget(**target), priority=50, created_at=BASE_TIME)


class RunnerKit:
    """Everything a test needs around one :class:`CollectionJobRunner`."""

    def __init__(
        self,
        provider: FakeContentProvider,
        gateway: Optional[FakeGateway] = None,
        *,
        config: Optional[CollectionConfig] = None,
        checkpoints: Optional[InMemoryCheckpointStore] = None,
        mentions: Optional[InMemoryMentionStore] = None,
        clock: Optional[FakeClock] = None,
        monitor: Optional[Monitor] = None,
    ):
        self.config = config or make_config()
        self.provider = provider
        self.gateway = gateway or FakeGateway()
        self.checkpoints = checkpoints or InMemoryCheckpointStore()
        self.mentions = mentions or InMemoryMentionStore()
        self.jobs = InMemoryJobStore()
        self.clock = clock or FakeClock()
        self.alerts: list = []
        self.monitor = monitor or Monitor(self.config.monitor, alert_sink=self.alerts.append, clock=self.clock)
        self.dispatcher = ConcurrentDispatcher(
            self.gateway,
            concurrency_limit=self.config.dispatch.concurrency_limit,
            retry_budget=self.config.dispatch.chunk_retry_budget,
            sleep=lambda seconds: None,
        )
        self.runner = CollectionJobRunner(
            self.config,
            provider,
            self.dispatcher,
            MergeEngine(self.mentions),
            self.checkpoints,
            monitor=self.monitor,
            job_store=self.jobs,
            clock=self.clock,
            sleep=self.clock.sleep,
        )


class _FakeResponse:
    def __init__(self, data):
        self.data = data


class _FakeQuery:
    def __init__(self, client: "FakeSupabaseClient", table: str):
        self._client = client
        self._table = table
        self._op = "select"
        self._payload = None
        self._on_conflict: Optional[str] = None
        self._filters: List[Callable[[dict], bool]] = []
        self._limit: Optional[int] = None
        self._order: Optional[str] = None

    def select(self, columns: str = "*"):
        self._op = "select"
        return self

    def insert(self, row):
        self._op, self._payload = "insert", row
        return self

    def upsert(self, rows, on_conflict: str = ""):
        self._op, self._payload, self._on_conflict = "upsert", rows, on_conflict
        return self

    def update(self, values):
        self._op, self._payload = "update", values
        return self

    def delete(self):
        self._op = "delete"
        return self

    def eq(self, column, value):
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column, values):
        allowed = set(values)
        self._filters.append(lambda row: row.get(column) in allowed)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def order(self, column):
        self._order = column
        return self

    def _matches(self, row) -> bool:
        return all(check(row) for check in self._filters)

    def execute(self):
        return self._client._execute(self)


class FakeSupabaseClient:
    """Dict-backed stand-in for the Supabase query builder.

    ``unique`` maps a table to the column that ``insert`` treats as a unique
    constraint; ``fail_with`` makes the next ``execute`` raise.
    """

    def __init__(self, unique: Optional[Dict[str, str]] = None):
        self.tables: Dict[str, List[dict]] = {}
        self.unique = unique or {}
        self.fail_with: Optional[BaseException] = None
        self.executed: List[tuple] = []
        self._lock = threading.Lock()

    def table(self, name: str) -> _FakeQuery:
        return _FakeQuery(self, name)

    def _execute(self, query: _FakeQuery) -> _FakeResponse:
        with self._lock:
            self.executed.append((query._table, query._op))
            if self.fail_with is not None:
                error, self.fail_with = self.fail_with, None
                raise error
            rows = self.tables.setdefault(query._table, [])

            if query._op == "select":
                found = [dict(row) for row in rows if query._matches(row)]
                if query._order:
                    found.sort(key=lambda row: str(row.get(query._order)))
                if query._limit is not None:
                    found = found[: query._limit]
                return _FakeResponse(found)

            if query._op == "insert":
                column = self.unique.get(query._table)
                if column and any(row.get(column) == query._payload.get(column) for row in rows):
                    raise APIError({"code": "23505", "message": "duplicate key value violates unique constraint"})
                rows.append(dict(query._payload))
                return _FakeResponse([dict(query._payload)])

            if query._op == "upsert":
                payload = query._payload if isinstance(query._payload, list) else [query._payload]
                keys = [column.strip() for column in (query._on_conflict or "id").split(",")]
                for new_row in payload:
                    for index, row in enumerate(rows):
                        if all(row.get(key) == new_row.get(key) for key in keys):
                            rows[index] = {**row, **new_row}
                            break
                    else:
                        rows.append(dict(new_row))
                return _FakeResponse([dict(row) for row in payload])

            if query._op == "update":
                changed = []
                for row in rows:
                    if query._matches(row):
                        row.update(query._payload)
                        changed.append(dict(row))
                return _FakeResponse(changed)

            removed = [row for row in rows if query._matches(row)]
            self.tables[query._table] = [row for row in rows if not query._matches(row)]
            return _FakeResponse(removed)

import threading
from datetime import timedelta

import pytest

from src.functions.forum_collection.core.contracts.extraction import Outcome, OutcomeKind
from src.functions.forum_collection.core.contracts.job import Checkpoint, JobKind, JobStatus
from src.functions.forum_collection.core.db.checkpoint_store import InMemoryCheckpointStore
from src.functions.forum_collection.core.db.mention_store import InMemoryMentionStore
from src.functions.forum_collection.core.errors import (
    CheckpointCorruptError,
    MalformedThreadError,
    SourceNotFoundError,
    SourceRateLimitError,
    SourceUnavailableError,
    StoreError,
)
from src.functions.forum_collection.core.jobs import classify_error

from tests.forum_collection.fixtures import (
    BASE_TIME,
    FakeContentProvider,
    FakeGateway,
    RunnerKit,
    make_config,
    make_job,
    make_thread,
)

SCENARIO_SIZES = [29, 8, 14, 3, 5] + [2] * 30 + [6] * 6 + [5, 5] + [13]


class _Crash(BaseException):
    """Simulates the process dying; not caught by ``except Exception``."""


class CrashingCheckpointStore(InMemoryCheckpointStore):
    def __init__(self, crash_on_save: int):
        super().__init__()
        self.crash_on_save = crash_on_save
        self.saves = 0

    def save(self, checkpoint):
        self.saves += 1
        if self.saves == self.crash_on_save:
            raise _Crash()
        super().save(checkpoint)


class TimeoutCheckpointStore(InMemoryCheckpointStore):
    """Raises TimeoutError on the listed save and load calls, counted from 1."""

    def __init__(self, failing_saves=(), failing_loads=()):
        super().__init__()
        self.failing_saves = set(failing_saves)
        self.failing_loads = set(failing_loads)
        self.saves = 0
        self.loads = 0

    def save(self, checkpoint):
        self.saves += 1
        if self.saves in self.failing_saves:
            raise TimeoutError("checkpoint write timed out")
        super().save(checkpoint)

    def load(self, job_id):
        self.loads += 1
        if self.loads in self.failing_loads:
            raise TimeoutError("checkpoint read timed out")
        return super().load(job_id)


class TimeoutMentionStore(InMemoryMentionStore):
    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    def upsert_mentions(self, mentions):
        if self.failures:
            self.failures -= 1
            raise TimeoutError("store write timed out")
        return super().upsert_mentions(mentions)


def _threads():
    return {
        "p1": make_thread("p1", [3, 2]),
        "p2": make_thread("p2", [4]),
        "p3": make_thread("p3", [2, 2, 1]),
    }


def test_job_completes_and_reports_summary():
    threads = {"p1": make_thread("p1", [3, 2]), "p2": make_thread("p2", [4])}
    kit = RunnerKit(FakeContentProvider(threads))
    job = make_job()

    result = kit.runner.run(job)

    assert result.status is JobStatus.COMPLETED
    assert result.summary.items_processed == 2
    assert result.summary.chunks_total == 3
    assert result.summary.chunk_size_distribution == [3, 2, 4]
    assert result.summary.success_rate == 100.0
    assert set(result.summary.to_dict()) == {
        "jobId",
        "itemsProcessed",
        "chunksTotal",
        "chunkSizeDistribution",
        "successRate",
        "avgChunkTimeMs",
        "totalTimeMs",
    }
    assert kit.jobs.get(job.id).status is JobStatus.COMPLETED
    checkpoint = kit.checkpoints.load(job.id)
    assert checkpoint.status is JobStatus.COMPLETED
    assert checkpoint.last_completed_item_id == "p2"
    assert checkpoint.work_items == ["p1", "p2"]


def test_scenario_thread_tolerates_two_failed_chunks():
    threads = {"p178": make_thread("p178", SCENARIO_SIZES)}
    gateway = FakeGateway({"chunk_c3_0": [Outcome.permanent("bad")], "chunk_c40_0": [Outcome.permanent("bad")]})
    kit = RunnerKit(FakeContentProvider(threads), gateway, config=make_config(concurrency=16))

    result = kit.runner.run(make_job())

    assert result.status is JobStatus.COMPLETED
    assert result.retry_count == 0
    assert result.summary.chunks_total == 44
    assert result.summary.success_rate == pytest.approx(42 / 44 * 100)
    # 178 comments minus the 3 + 6 in failed chunks, plus the shared post mention
    assert len(kit.mentions.all_mentions()) == 170
    assert gateway.max_active <= 16


def _reference_snapshot():
    kit = RunnerKit(FakeContentProvider(_threads()))
    result = kit.runner.run(make_job())
    assert result.status is JobStatus.COMPLETED
    return kit.mentions.snapshot(), result


def test_resume_after_crash_between_items_matches_uninterrupted_run():
    reference, reference_result = _reference_snapshot()

    provider = FakeContentProvider(_threads())
    crashed = {"done": False}

    def crash_once(post_id):
        if post_id == "p3" and not crashed["done"]:
            crashed["done"] = True
            raise _Crash()

    provider.on_fetch = crash_once
    first = RunnerKit(provider)
    job = make_job()
    with pytest.raises(_Crash):
        first.runner.run(job)

    stored = first.checkpoints.load(job.id)
    assert stored.last_completed_item_id == "p2"
    assert stored.status is JobStatus.RUNNING

    second = RunnerKit(provider, checkpoints=first.checkpoints, mentions=first.mentions)
    result = second.runner.run(job)

    assert result.status is JobStatus.COMPLETED
    assert provider.fetched == ["p1", "p2", "p3"]
    assert provider.list_calls == 1
    assert result.summary.items_processed == 3
    assert result.summary.chunks_total == reference_result.summary.chunks_total
    assert first.mentions.snapshot() == reference


def test_resume_after_crash_between_merge_and_checkpoint_is_idempotent():
    reference, reference_result = _reference_snapshot()

    # save 1 stores the listing, save 2 follows p1, save 3 would follow p2
    checkpoints = CrashingCheckpointStore(crash_on_save=3)
    provider = FakeContentProvider(_threads())
    first = RunnerKit(provider, checkpoints=checkpoints)
    job = make_job()
    with pytest.raises(_Crash):
        first.runner.run(job)
    assert checkpoints.load(job.id).last_completed_item_id == "p1"

    second = RunnerKit(provider, checkpoints=checkpoints, mentions=first.mentions)
    result = second.runner.run(job)

    assert result.status is JobStatus.COMPLETED
    assert provider.fetched == ["p1", "p2", "p2", "p3"]
    assert result.summary.items_processed == 3
    assert result.summary.chunk_size_distribution == reference_result.summary.chunk_size_distribution
    assert first.mentions.snapshot() == reference


def test_transient_failures_exhaust_retry_budget_and_fail():
    provider = FakeContentProvider(
        {"p1": make_thread("p1", [2])},
        errors={"p1": [SourceUnavailableError("503 from forum")] * 10},
    )
    kit = RunnerKit(provider, config=make_config(max_retries=2))
    job = make_job()

    result = kit.runner.run(job)

    assert result.status is JobStatus.FAILED
    assert result.retry_count == 3
    assert result.error.startswith("Retry budget exhausted after 2 retries")
    assert len(kit.clock.sleeps) == 2
    assert kit.clock.sleeps == sorted(kit.clock.sleeps)
    assert 10 <= kit.clock.sleeps[0] <= 15
    assert provider.list_calls == 1
    assert kit.jobs.get(job.id).status is JobStatus.FAILED
    assert [alert.alert_type for alert in kit.alerts] == ["job_failed"]
    assert result.failures == {"job": 1}


def test_rate_limit_hint_sets_minimum_backoff_then_completes():
    provider = FakeContentProvider(
        {"p1": make_thread("p1", [2])},
        errors={"p1": [SourceRateLimitError("429", retry_after=120)]},
    )
    kit = RunnerKit(provider)
    job = make_job()

    result = kit.runner.run(job)

    assert result.status is JobStatus.COMPLETED
    assert result.retry_count == 1
    assert kit.clock.sleeps == [120]
    assert kit.monitor.job_metrics(job.id)["attempted"] == 1


def test_retry_delay_never_drops_below_a_rate_limit_hint():
    provider = FakeContentProvider(
        {"p1": make_thread("p1", [2])},
        errors={"p1": [SourceRateLimitError("429", retry_after=2000), SourceUnavailableError("503 from forum")]},
    )
    kit = RunnerKit(provider)
    job = make_job()

    result = kit.runner.run(job)

    assert result.status is JobStatus.COMPLETED
    assert result.retry_count == 2
    # 2000s is above the 900s cap; the second retry keeps it as a floor
    assert kit.clock.sleeps == [2000, 2000]
    assert kit.checkpoints.load(job.id).last_backoff_seconds == 2000


def test_timed_out_mention_write_retries_the_item():
    reference = RunnerKit(FakeContentProvider(_threads()))
    reference.runner.run(make_job())
    mentions = TimeoutMentionStore(failures=1)
    provider = FakeContentProvider(_threads())
    kit = RunnerKit(provider, mentions=mentions)
    job = make_job()

    result = kit.runner.run(job)

    assert result.status is JobStatus.COMPLETED
    assert result.retry_count == 1
    assert provider.fetched == ["p1", "p1", "p2", "p3"]
    assert [m.key for m in mentions.all_mentions()] == [m.key for m in reference.mentions.all_mentions()]
    assert kit.jobs.get(job.id).status is JobStatus.COMPLETED


def test_timed_out_checkpoint_write_retries_from_the_next_item():
    # save 1 stores the listing, save 2 follows p1
    checkpoints = TimeoutCheckpointStore(failing_saves={2})
    provider = FakeContentProvider(_threads())
    kit = RunnerKit(provider, checkpoints=checkpoints)
    job = make_job()

    result = kit.runner.run(job)

    assert result.status is JobStatus.COMPLETED
    assert result.retry_count == 1
    assert result.summary.items_processed == 3
    assert provider.fetched == ["p1", "p2", "p3"]
    assert checkpoints.load(job.id).status is JobStatus.COMPLETED
    assert kit.jobs.get(job.id).status is JobStatus.COMPLETED


def test_timed_out_final_checkpoint_write_still_finishes_the_job():
    # saves 2-4 follow the three items, save 5 records the terminal status
    checkpoints = TimeoutCheckpointStore(failing_saves={5})
    kit = RunnerKit(FakeContentProvider(_threads()), checkpoints=checkpoints)
    job = make_job()

    result = kit.runner.run(job)

    assert result.status is JobStatus.COMPLETED
    assert result.failures == {"checkpoint": 1}
    assert kit.jobs.get(job.id).status is JobStatus.COMPLETED
    assert checkpoints.load(job.id).last_completed_item_id == "p3"


def test_timed_out_checkpoint_read_is_retried():
    checkpoints = TimeoutCheckpointStore(failing_loads={1})
    kit = RunnerKit(FakeContentProvider(_threads()), checkpoints=checkpoints)

    result = kit.runner.run(make_job())

    assert result.status is JobStatus.COMPLETED
    assert len(kit.clock.sleeps) == 1
    assert 5 <= kit.clock.sleeps[0] <= 10


def test_unreadable_checkpoint_store_fails_the_job():
    checkpoints = TimeoutCheckpointStore(failing_loads={1, 2, 3})
    kit = RunnerKit(FakeContentProvider(_threads()), checkpoints=checkpoints, config=make_config(max_retries=2))
    job = make_job()

    result = kit.runner.run(job)

    assert result.status is JobStatus.FAILED
    assert result.error.startswith("Could not load checkpoint")
    assert kit.jobs.get(job.id).status is JobStatus.FAILED
    assert len(kit.clock.sleeps) == 2


def test_permanent_item_failure_is_skipped():
    provider = FakeContentProvider(_threads(), errors={"p2": [SourceNotFoundError("post removed")]})
    kit = RunnerKit(provider)

    result = kit.runner.run(make_job())

    assert result.status is JobStatus.COMPLETED
    assert result.skipped_items == ["p2"]
    assert result.summary.items_processed == 2
    assert result.failures == {"item": 1, "item_skipped": 1}
    checkpoint = kit.checkpoints.load(result.job.id)
    assert checkpoint.last_completed_item_id == "p3"
    assert checkpoint.aggregate_counts["items_skipped"] == 1


def test_cancel_event_stops_between_items():
    provider = FakeContentProvider(_threads())
    kit = RunnerKit(provider)
    cancel = threading.Event()
    provider.on_fetch = lambda post_id: cancel.set() if post_id == "p1" else None

    result = kit.runner.run(make_job(), cancel_event=cancel)

    assert result.status is JobStatus.CANCELLED
    assert provider.fetched == ["p1"]
    assert result.summary.items_processed == 1
    assert kit.checkpoints.load(result.job.id).status is JobStatus.CANCELLED


def test_cancel_request_in_job_store_is_honoured():
    provider = FakeContentProvider(_threads())
    kit = RunnerKit(provider)
    job = make_job()
    provider.on_fetch = lambda post_id: kit.jobs.request_cancel(job.id) if post_id == "p2" else None

    result = kit.runner.run(job)

    assert result.status is JobStatus.CANCELLED
    assert provider.fetched == ["p1", "p2"]


def test_corrupt_checkpoint_fails_job_and_keeps_document():
    kit = RunnerKit(FakeContentProvider(_threads()))
    job = make_job()
    kit.checkpoints.corrupt(job.id, "{not json")

    result = kit.runner.run(job)

    assert result.status is JobStatus.FAILED
    assert kit.provider.fetched == []
    with pytest.raises(CheckpointCorruptError):
        kit.checkpoints.load(job.id)
    assert kit.alerts[0].alert_type == "job_failed"


def test_checkpoint_pointing_outside_work_items_fails_job():
    kit = RunnerKit(FakeContentProvider(_threads()))
    job = make_job()
    kit.checkpoints.save(
        Checkpoint(job_id=job.id, status=JobStatus.RUNNING, work_items=["p1"], last_completed_item_id="zzz")
    )

    result = kit.runner.run(job)

    assert result.status is JobStatus.FAILED
    assert "not one of its work items" in result.error


def test_tolerance_breach_retries_whole_item():
    gateway = FakeGateway({"chunk_c0_0": [Outcome.permanent("bad output")]})
    kit = RunnerKit(FakeContentProvider({"p1": make_thread("p1", [3, 2])}), gateway)
    job = make_job()

    result = kit.runner.run(job)

    assert result.status is JobStatus.COMPLETED
    assert result.retry_count == 1
    assert gateway.calls.count("chunk_c0_0") == 2
    assert result.summary.chunks_total == 2
    assert result.summary.success_rate == 100.0
    assert kit.monitor.job_metrics(job.id)["attempted"] == 4


def test_waits_out_stored_backoff_on_resume():
    kit = RunnerKit(FakeContentProvider({"p1": make_thread("p1", [1])}))
    job = make_job()
    kit.checkpoints.save(
        Checkpoint(
            job_id=job.id,
            status=JobStatus.RETRYING,
            retry_count=1,
            backoff_until=BASE_TIME + timedelta(seconds=30),
            updated_at=BASE_TIME,
        )
    )

    result = kit.runner.run(job)

    assert kit.clock.sleeps[0] == pytest.approx(30.0)
    assert result.status is JobStatus.COMPLETED
    assert result.retry_count == 1


def test_retry_count_survives_restart():
    provider = FakeContentProvider(
        {"p1": make_thread("p1", [1])},
        errors={"p1": [SourceUnavailableError("connection reset")]},
    )
    kit = RunnerKit(provider, config=make_config(max_retries=2))
    job = make_job()
    kit.checkpoints.save(Checkpoint(job_id=job.id, status=JobStatus.RETRYING, retry_count=2))

    result = kit.runner.run(job)

    assert result.status is JobStatus.FAILED
    assert result.retry_count == 3
    assert kit.clock.sleeps == []


def test_finished_checkpoint_is_not_rerun():
    provider = FakeContentProvider(_threads())
    kit = RunnerKit(provider)
    job = make_job()
    kit.runner.run(job)

    again = kit.runner.run(job)

    assert again.status is JobStatus.COMPLETED
    assert provider.fetched == ["p1", "p2", "p3"]


def test_terminal_job_is_returned_untouched():
    kit = RunnerKit(FakeContentProvider(_threads()))
    job = make_job().with_status(JobStatus.CANCELLED)

    result = kit.runner.run(job)

    assert result.status is JobStatus.CANCELLED
    assert kit.provider.list_calls == 0


def test_work_items_per_kind():
    provider = FakeContentProvider(_threads(), search_results={"lucali": ["p3", "p1"]})
    kit = RunnerKit(provider)

    assert kit.runner.work_items(make_job()) == ["p1", "p2", "p3"]
    keyword = make_job("kw", JobKind.KEYWORD_SEARCH, keyword="lucali", entity_key="lucali")
    assert kit.runner.work_items(keyword) == ["p3", "p1"]
    manual = make_job("manual", JobKind.MANUAL, item_ids=["p2", "p1", "p2"])
    assert kit.runner.work_items(manual) == ["p2", "p1"]
    manual_search = make_job("manual-kw", JobKind.MANUAL, keyword="lucali")
    assert kit.runner.work_items(manual_search) == ["p3", "p1"]


def test_keyword_job_without_keyword_fails():
    kit = RunnerKit(FakeContentProvider(_threads()))

    result = kit.runner.run(make_job("kw", JobKind.KEYWORD_SEARCH))

    assert result.status is JobStatus.FAILED
    assert "has no keyword" in result.error


@pytest.mark.parametrize(
    "exc, kind, category",
    [
        (SourceRateLimitError("429", retry_after=5), OutcomeKind.TRANSIENT, "rate_limit"),
        (SourceNotFoundError("gone"), OutcomeKind.PERMANENT, "source_api_error"),
        (MalformedThreadError("bad json"), OutcomeKind.PERMANENT, "source_api_error"),
        (SourceUnavailableError("502"), OutcomeKind.TRANSIENT, "network_error"),
        (StoreError("supabase down"), OutcomeKind.TRANSIENT, "database_error"),
        (CheckpointCorruptError("bad"), OutcomeKind.PERMANENT, "database_error"),
        (ConnectionResetError("reset"), OutcomeKind.TRANSIENT, "network_error"),
        (MemoryError(), OutcomeKind.TRANSIENT, "memory_error"),
        (KeyError("oops"), OutcomeKind.PERMANENT, "unknown_error"),
    ],
)
def test_classify_error(exc, kind, category):
    outcome = classify_error(exc)

    assert outcome.kind is kind
    assert outcome.category == category


def test_rate_limit_classification_keeps_retry_after():
    assert classify_error(SourceRateLimitError("429", retry_after=42)).retry_after == 42

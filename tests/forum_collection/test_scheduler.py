import threading
from datetime import timedelta

import pytest

from src.functions.forum_collection.core.contracts.config import ForumSourceConfig, SchedulerConfig
from src.functions.forum_collection.core.contracts.extraction import Entity
from src.functions.forum_collection.core.contracts.job import JobKind
from src.functions.forum_collection.core.db.job_store import InMemoryJobStore
from src.functions.forum_collection.core.errors import StoreError
from src.functions.forum_collection.core.jobs import InMemoryLiveJobRegistry
from src.functions.forum_collection.core.scheduling import Scheduler

from tests.forum_collection.fixtures import BASE_TIME, make_config

ENTITIES = [
    Entity(key="lucali", name="Lucali", mention_count=2),
    Entity(key="di fara", name="Di Fara", mention_count=18, last_enriched_at=BASE_TIME - timedelta(days=1)),
    Entity(key="joes pizza", name="Joe's Pizza", mention_count=5, search_demand=40),
]


def _config(sources=("FoodNYC",), **scheduler):
    scheduler.setdefault("top_k", 0)
    return make_config(sources=sources).model_copy(update={"scheduler": SchedulerConfig(**scheduler)})


def _scheduler(config=None, registry=None, entities=(), job_store=None):
    return Scheduler(
        config or _config(),
        registry or InMemoryLiveJobRegistry(),
        lambda: list(entities),
        job_store=job_store,
    )


def test_first_tick_emits_chronological_job_per_source():
    scheduler = _scheduler(_config(sources=("FoodNYC", "AskNYC")))

    jobs = scheduler.tick(BASE_TIME)

    assert [job.kind for job in jobs] == [JobKind.CHRONOLOGICAL, JobKind.CHRONOLOGICAL]
    assert {job.target.source for job in jobs} == {"FoodNYC", "AskNYC"}
    assert all(job.target.since is None for job in jobs)
    assert len({job.target_key for job in jobs}) == 2


def test_live_target_is_not_emitted_again():
    registry = InMemoryLiveJobRegistry()
    scheduler = _scheduler(registry=registry)

    first = scheduler.tick(BASE_TIME)
    second = scheduler.tick(BASE_TIME + timedelta(minutes=1))

    assert len(first) == 1
    assert second == []
    assert registry.holder(first[0].target_key) == first[0].id


def test_concurrent_ticks_across_schedulers_emit_each_target_once():
    registry = InMemoryLiveJobRegistry()
    config = _config(sources=("FoodNYC", "AskNYC", "nycrestaurants"))
    schedulers = [_scheduler(config, registry) for _ in range(4)]
    barrier = threading.Barrier(len(schedulers))
    emitted = []
    lock = threading.Lock()

    def tick(scheduler):
        barrier.wait()
        jobs = scheduler.tick(BASE_TIME)
        with lock:
            emitted.extend(jobs)

    threads = [threading.Thread(target=tick, args=(s,)) for s in schedulers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    keys = [job.target_key for job in emitted]
    assert len(keys) == 3
    assert len(set(keys)) == 3
    assert len(registry.active()) == 3


def test_source_is_due_again_after_interval():
    registry = InMemoryLiveJobRegistry()
    scheduler = _scheduler(registry=registry)
    [job] = scheduler.tick(BASE_TIME)
    registry.release(job.target_key, job.id)
    scheduler.record_run_success("FoodNYC", BASE_TIME)

    # 50 posts/day -> 15 day interval
    assert scheduler.tick(BASE_TIME + timedelta(days=14)) == []
    [later] = scheduler.tick(BASE_TIME + timedelta(days=15))

    assert later.target.since == BASE_TIME
    assert scheduler.last_success("FoodNYC") == BASE_TIME


def test_disabled_sources_are_skipped():
    config = make_config().model_copy(
        update={
            "sources": [
                ForumSourceConfig(name="FoodNYC"),
                ForumSourceConfig(name="FoodLosAngeles", enabled=False),
            ],
            "scheduler": SchedulerConfig(top_k=0),
        }
    )

    jobs = _scheduler(config).tick(BASE_TIME)

    assert [job.target.source for job in jobs] == ["FoodNYC"]


def test_manual_jobs_come_first_and_persist():
    job_store = InMemoryJobStore()
    scheduler = _scheduler(job_store=job_store)
    manual = scheduler.request_manual("FoodNYC", BASE_TIME, item_ids=["p1"])

    jobs = scheduler.tick(BASE_TIME)

    assert jobs[0].id == manual.id
    assert jobs[0].priority == 100
    assert jobs[1].kind is JobKind.CHRONOLOGICAL
    assert [job.id for job in job_store.list_jobs()] == sorted(job.id for job in jobs)
    assert scheduler.pending_manual() == []


def test_busy_manual_target_stays_queued_in_order():
    registry = InMemoryLiveJobRegistry()
    scheduler = _scheduler(_config(sources=()), registry)
    first = scheduler.request_manual("FoodNYC", BASE_TIME, item_ids=["p1"])
    scheduler.tick(BASE_TIME)

    second = scheduler.request_manual("FoodNYC", BASE_TIME, item_ids=["p2"])
    third = scheduler.request_manual("FoodNYC", BASE_TIME, item_ids=["p3"])
    assert scheduler.tick(BASE_TIME) == []
    assert [job.id for job in scheduler.pending_manual()] == [second.id, third.id]

    registry.release(first.target_key, first.id)
    jobs = scheduler.tick(BASE_TIME)

    assert [job.id for job in jobs] == [second.id]
    assert [job.id for job in scheduler.pending_manual()] == [third.id]


def test_failed_tick_releases_claims_and_requeues_manual_jobs():
    registry = InMemoryLiveJobRegistry()
    entities = {"fail": True}

    def entity_provider():
        if entities["fail"]:
            raise StoreError("entity table unavailable")
        return list(ENTITIES)

    scheduler = Scheduler(_config(sources=("FoodNYC",), top_k=5), registry, entity_provider)
    manual = scheduler.request_manual("FoodNYC", BASE_TIME, keyword="Lucali")

    with pytest.raises(StoreError):
        scheduler.tick(BASE_TIME)

    assert registry.active() == {}
    assert [job.id for job in scheduler.pending_manual()] == [manual.id]

    entities["fail"] = False
    jobs = scheduler.tick(BASE_TIME)

    assert jobs[0].id == manual.id
    assert {job.kind for job in jobs} == {JobKind.MANUAL, JobKind.CHRONOLOGICAL, JobKind.KEYWORD_SEARCH}
    assert scheduler.pending_manual() == []


class _FailingJobStore(InMemoryJobStore):
    def save(self, job):
        raise StoreError("job table unavailable")


def test_job_store_failure_during_tick_releases_claims():
    registry = InMemoryLiveJobRegistry()
    scheduler = _scheduler(_config(sources=("FoodNYC", "AskNYC")), registry, job_store=_FailingJobStore())

    with pytest.raises(StoreError):
        scheduler.tick(BASE_TIME)

    assert registry.active() == {}


def test_keyword_jobs_for_top_k_entities_on_each_source():
    scheduler = _scheduler(_config(sources=("FoodNYC", "AskNYC"), top_k=2), entities=ENTITIES)

    jobs = scheduler.tick(BASE_TIME)
    keyword_jobs = [job for job in jobs if job.kind is JobKind.KEYWORD_SEARCH]

    assert len(keyword_jobs) == 4
    assert {job.target.entity_key for job in keyword_jobs} == {"lucali", "joes pizza"}
    assert {job.target.keyword for job in keyword_jobs} == {"Lucali", "Joe's Pizza"}
    assert len({job.target_key for job in keyword_jobs}) == 4
    priorities = [job.priority for job in jobs]
    assert priorities == sorted(priorities, reverse=True)


def test_enrichment_runs_once_per_interval():
    registry = InMemoryLiveJobRegistry()
    scheduler = _scheduler(_config(sources=("FoodNYC",), top_k=1, enrichment_interval_days=30), registry, ENTITIES)

    first = [job for job in scheduler.tick(BASE_TIME) if job.kind is JobKind.KEYWORD_SEARCH]
    for job in first:
        registry.release(job.target_key, job.id)

    assert [j for j in scheduler.tick(BASE_TIME + timedelta(days=29)) if j.kind is JobKind.KEYWORD_SEARCH] == []
    again = [j for j in scheduler.tick(BASE_TIME + timedelta(days=30)) if j.kind is JobKind.KEYWORD_SEARCH]

    assert len(first) == 1
    assert len(again) == 1


def test_enrichment_offset_delays_first_cycle():
    scheduler = _scheduler(_config(sources=("FoodNYC",), top_k=1, enrichment_offset_days=3), entities=ENTITIES)

    assert not any(job.kind is JobKind.KEYWORD_SEARCH for job in scheduler.tick(BASE_TIME))
    assert not any(
        job.kind is JobKind.KEYWORD_SEARCH for job in scheduler.tick(BASE_TIME + timedelta(days=2))
    )
    assert any(job.kind is JobKind.KEYWORD_SEARCH for job in scheduler.tick(BASE_TIME + timedelta(days=3)))


@pytest.mark.parametrize(
    "source, expected_days",
    [
        (ForumSourceConfig(name="a", average_posts_per_day=50), 15),
        (ForumSourceConfig(name="b", average_posts_per_day=10), 60),
        (ForumSourceConfig(name="c", average_posts_per_day=1000), 7),
        (ForumSourceConfig(name="d"), 37.5),
        (ForumSourceConfig(name="e", interval_hours=24), 1),
    ],
)
def test_interval_for_uses_safety_buffer(source, expected_days):
    config = make_config().model_copy(update={"sources": [source]})
    scheduler = _scheduler(config)

    assert scheduler.interval_for(source) == timedelta(days=expected_days)


def test_posting_volume_is_smoothed():
    scheduler = _scheduler()
    source = ForumSourceConfig(name="FoodNYC")

    assert scheduler.update_posting_volume("FoodNYC", 100) == pytest.approx(65.0)
    assert scheduler.update_posting_volume("FoodNYC", 0) == pytest.approx(65.0)
    assert scheduler.interval_for(source) == timedelta(days=750 / 65.0)

import asyncio
from datetime import datetime, timedelta, timezone

from catalog_sync.services.job_queue import JobQueue
from catalog_sync.services.scheduler import (
    ScheduledSource,
    build_idempotency_key,
    enqueue_scheduled_jobs,
    minute_bucket,
    schedule_bucket,
)
from catalog_sync.services.store import InMemoryRepository

NOW = datetime(2025, 1, 1, 0, 30, tzinfo=timezone.utc)


def test_buckets_and_keys() -> None:
    assert minute_bucket(datetime(2025, 1, 1, 9, 0, 59, tzinfo=timezone.utc)) == "2025-01-01T09:00"
    assert schedule_bucket(NOW, 60) == 482136
    assert schedule_bucket(NOW + timedelta(minutes=29), 60) == 482136
    assert schedule_bucket(NOW + timedelta(minutes=30), 60) == 482137
    assert build_idempotency_key("schedule", "offers-head", 482136) == "schedule:offers-head:482136"


def test_schedule_tick_enqueues_once_per_bucket() -> None:
    repo = InMemoryRepository()
    queue = JobQueue(repo)

    async def run():
        first = await enqueue_scheduled_jobs(queue, now=NOW)
        second = await enqueue_scheduled_jobs(queue, now=NOW + timedelta(minutes=5))
        return first, second

    first, second = asyncio.run(run())
    assert (first.scanned, first.enqueued, first.deduped) == (2, 2, 0)
    assert (second.scanned, second.enqueued, second.deduped) == (2, 0, 2)
    assert len(repo.jobs) == 2

    keys = sorted(job["idempotency_key"] for job in repo.jobs.values())
    assert keys[1] == "schedule:offers-head:482136"
    assert keys[0].startswith("schedule:offers-detail:")


def test_schedule_tick_skips_disabled_and_counts_invalid_sources() -> None:
    repo = InMemoryRepository()
    queue = JobQueue(repo)
    sources = (
        ScheduledSource(slug="paused", kind="offers.head_refresh.bulk", every_minutes=60, enabled=False),
        ScheduledSource(slug="broken", kind="offers.head_refresh.bulk", every_minutes=60, payload={"limit": 0}),
        ScheduledSource(slug="ok", kind="offers.detail_refresh.bulk", every_minutes=30, priority=40),
    )

    result = asyncio.run(enqueue_scheduled_jobs(queue, now=NOW, sources=sources))

    assert result.scanned == 3
    assert result.skipped == 1
    assert result.errors == 1
    assert result.enqueued == 1
    (job,) = repo.jobs.values()
    assert job["priority"] == 40
    assert job["idempotency_key"] == f"schedule:ok:{schedule_bucket(NOW, 30)}"


def test_schedule_tick_does_not_rerun_a_finished_bucket() -> None:
    repo = InMemoryRepository()
    queue = JobQueue(repo)

    async def run():
        await enqueue_scheduled_jobs(queue, now=NOW)
        for _ in range(2):
            job = await queue.lease("worker-1", now=NOW)
            await queue.complete(job["id"], {"handled": True}, now=NOW)
        same_window = await enqueue_scheduled_jobs(queue, now=NOW + timedelta(minutes=1))
        next_window = await enqueue_scheduled_jobs(queue, now=NOW + timedelta(minutes=30))
        return same_window, next_window

    same_window, next_window = asyncio.run(run())
    assert (same_window.enqueued, same_window.deduped) == (0, 2)
    assert (next_window.enqueued, next_window.deduped) == (1, 1)
    assert len(repo.jobs) == 3
    assert sorted(job["status"] for job in repo.jobs.values()) == ["queued", "succeeded", "succeeded"]

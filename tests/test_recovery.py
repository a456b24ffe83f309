from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from catalog_sync.services.job_queue import JobQueue
from catalog_sync.services.recovery import (
    MAX_RECOVERY_LIMIT,
    apply_recovery_action,
    clamp_recovery_limit,
    clamp_recovery_minutes,
    classify_recovery_candidates,
    collect_queue_stats,
    find_recovery_candidates,
)
from catalog_sync.services.store import InMemoryRepository

NOW = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


def _at(hour: int, minute: int) -> datetime:
    return datetime(2025, 1, 1, hour, minute, tzinfo=timezone.utc)


def test_classify_recovery_candidates_example() -> None:
    rows = [
        {"id": "queued-stale", "status": "queued", "run_after": _at(5, 30), "locked_at": None},
        {"id": "queued-fresh", "status": "queued", "run_after": _at(8, 50), "locked_at": None},
        {"id": "running-stuck", "status": "running", "run_after": _at(7, 0), "locked_at": _at(7, 30)},
        {"id": "running-fresh", "status": "running", "run_after": _at(8, 0), "locked_at": _at(8, 45)},
        {"id": "failed-one", "status": "failed", "run_after": _at(1, 0), "locked_at": None},
        {"id": "done", "status": "succeeded", "run_after": _at(1, 0), "locked_at": None},
    ]

    candidates = classify_recovery_candidates(rows, now=NOW, stale_queued_minutes=120, stuck_running_minutes=45)

    assert candidates.stale_queued_ids == ["queued-stale"]
    assert candidates.stuck_running_ids == ["running-stuck"]
    assert candidates.failed_ids == ["failed-one"]


def test_classify_recovery_candidates_uses_strict_cutoffs_and_parses_strings() -> None:
    rows = [
        {"id": "on-the-cutoff", "status": "queued", "run_after": _at(7, 0)},
        {"id": "iso-string", "status": "running", "locked_at": "2025-01-01T08:00:00Z"},
        {"id": "garbage", "status": "running", "locked_at": "yesterday"},
    ]

    candidates = classify_recovery_candidates(rows, now=NOW, stale_queued_minutes=120, stuck_running_minutes=45)

    assert candidates.stale_queued_ids == []
    assert candidates.stuck_running_ids == ["iso-string"]


def test_clamps() -> None:
    assert clamp_recovery_limit(None) == 200
    assert clamp_recovery_limit(0) == 1
    assert clamp_recovery_limit(5000) == 1000
    assert clamp_recovery_minutes(None, default=45) == 45
    assert clamp_recovery_minutes(0, default=45) == 1
    assert clamp_recovery_minutes(99999, default=45) == 1440


def test_recovery_actions_requeue_the_classified_jobs() -> None:
    repo = InMemoryRepository()
    queue = JobQueue(repo)
    three_hours_ago = NOW - timedelta(hours=3)

    async def run() -> dict:
        await queue.enqueue("offers.head_refresh.one", {"offer_id": "o-1"}, priority=10, now=three_hours_ago)
        stuck = await queue.lease("worker-1", now=three_hours_ago)
        stale = await queue.enqueue("offers.head_refresh.bulk", {}, run_after=three_hours_ago, now=three_hours_ago)
        failed_job = await queue.enqueue("offers.detail_refresh.bulk", {}, priority=1, now=NOW)
        leased = await queue.lease("worker-2", now=NOW)
        assert leased["id"] == failed_job.id
        await queue.fail(failed_job.id, "boom", now=NOW)

        candidates = await find_recovery_candidates(queue, now=NOW)
        assert candidates.stale_queued_ids == [stale.id]
        assert candidates.stuck_running_ids == [stuck["id"]]
        assert candidates.failed_ids == [failed_job.id]

        results = {
            "stale": await apply_recovery_action(queue, "requeue_stale_queued_jobs", now=NOW),
            "stuck": await apply_recovery_action(queue, "recover_stuck_running_jobs", now=NOW),
            "failed": await apply_recovery_action(queue, "retry_failed_jobs", now=NOW),
        }
        results["jobs"] = {job_id: await repo.get_job(job_id) for job_id in (stale.id, stuck["id"], failed_job.id)}
        results["ids"] = {"stale": stale.id, "stuck": stuck["id"], "failed": failed_job.id}
        return results

    results = asyncio.run(run())
    ids = results["ids"]
    jobs = results["jobs"]

    assert results["stale"].job_ids == [ids["stale"]]
    assert jobs[ids["stale"]]["run_after"] == NOW

    assert results["stuck"].affected == 1
    assert jobs[ids["stuck"]]["status"] == "queued"
    assert jobs[ids["stuck"]]["locked_by"] is None
    assert jobs[ids["stuck"]]["attempts"] == 1

    assert results["failed"].job_ids == [ids["failed"]]
    assert jobs[ids["failed"]]["status"] == "queued"
    assert jobs[ids["failed"]]["attempts"] == 0


def test_enqueue_freshness_refresh_dedupes_within_the_same_minute() -> None:
    repo = InMemoryRepository()
    queue = JobQueue(repo)

    async def run() -> tuple:
        first = await apply_recovery_action(queue, "enqueue_freshness_refresh", now=NOW)
        second = await apply_recovery_action(queue, "enqueue_freshness_refresh", now=NOW + timedelta(seconds=30))
        return first, second

    first, second = asyncio.run(run())
    assert first.affected == 2 and first.deduped == 0
    assert second.affected == 0 and second.deduped == 2
    assert second.job_ids == first.job_ids

    jobs = sorted(repo.jobs.values(), key=lambda job: job["kind"])
    assert [job["kind"] for job in jobs] == ["offers.detail_refresh.bulk", "offers.head_refresh.bulk"]
    assert jobs[1]["idempotency_key"] == "admin-recovery:offers-head:2025-01-01T09:00"
    assert all(job["priority"] == 20 for job in jobs)
    assert jobs[1]["payload"]["older_than_hours"] == 0


def test_collect_queue_stats() -> None:
    repo = InMemoryRepository()
    queue = JobQueue(repo)

    async def run():
        await queue.enqueue("offers.head_refresh.bulk", {}, run_after=NOW - timedelta(hours=5), now=NOW)
        await queue.enqueue("offers.head_refresh.bulk", {}, run_after=NOW + timedelta(hours=1), now=NOW)
        await queue.enqueue("offers.detail_refresh.bulk", {}, priority=1, now=NOW - timedelta(hours=2))
        await queue.lease("worker-1", now=NOW - timedelta(hours=2))
        return await collect_queue_stats(queue, now=NOW)

    stats = asyncio.run(run())
    assert stats.by_status == {"queued": 2, "running": 1, "succeeded": 0, "failed": 0}
    assert stats.ready_now == 1
    assert stats.stale_queued == 1
    assert stats.stuck_running == 1


def test_collect_queue_stats_counts_beyond_the_recovery_limit() -> None:
    repo = InMemoryRepository()
    queue = JobQueue(repo)

    async def run():
        for _ in range(MAX_RECOVERY_LIMIT + 50):
            await queue.enqueue("offers.head_refresh.bulk", {}, run_after=NOW - timedelta(hours=5), now=NOW)
        return await collect_queue_stats(queue, now=NOW)

    stats = asyncio.run(run())
    assert stats.by_status["queued"] == MAX_RECOVERY_LIMIT + 50
    assert stats.ready_now == MAX_RECOVERY_LIMIT + 50
    assert stats.stale_queued == MAX_RECOVERY_LIMIT + 50

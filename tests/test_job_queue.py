from __future__ import annotations

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from catalog_sync.services.job_queue import (
    JobNotFoundError,
    JobQueue,
    JobStateError,
    JobValidationError,
    compute_retry_delay_minutes,
    validate_job_spec,
)
from catalog_sync.services.store import InMemoryRepository

NOW = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


def test_validate_job_spec_fills_defaults_and_rejects_bad_payloads() -> None:
    assert validate_job_spec("offers.detail_refresh.bulk", {"older_than_hours": 20}) == {
        "older_than_hours": 20,
        "older_than_days": None,
        "limit": 30,
        "timeout_ms": 12000,
    }
    assert validate_job_spec("offers.head_refresh.one", {"offer_id": "o-1"}) == {
        "offer_id": "o-1",
        "timeout_ms": 6000,
    }

    with pytest.raises(JobValidationError):
        validate_job_spec("offers.unknown", {})
    with pytest.raises(JobValidationError):
        validate_job_spec("offers.head_refresh.bulk", {"limit": 0})
    with pytest.raises(JobValidationError):
        validate_job_spec("offers.head_refresh.bulk", {"surprise": True})
    with pytest.raises(JobValidationError):
        validate_job_spec("offers.head_refresh.one", {})
    with pytest.raises(JobValidationError):
        validate_job_spec("offers.head_refresh.bulk", {"timeout_ms": 100})


def test_enqueue_rejects_invalid_specs_before_writing() -> None:
    repo = InMemoryRepository()
    queue = JobQueue(repo)

    with pytest.raises(JobValidationError):
        asyncio.run(queue.enqueue("offers.head_refresh.bulk", {"limit": 9999}, now=NOW))
    assert repo.jobs == {}


def test_enqueue_dedupes_active_jobs_and_allows_reuse_after_terminal_state() -> None:
    repo = InMemoryRepository()
    queue = JobQueue(repo)

    async def run() -> tuple:
        first = await queue.enqueue("offers.head_refresh.bulk", {}, idempotency_key="k-1", now=NOW)
        second = await queue.enqueue("offers.head_refresh.bulk", {}, idempotency_key="k-1", now=NOW)
        leased = await queue.lease("worker-1", now=NOW)
        during_run = await queue.enqueue("offers.head_refresh.bulk", {}, idempotency_key="k-1", now=NOW)
        await queue.complete(leased["id"], {"ok": True}, now=NOW)
        third = await queue.enqueue("offers.head_refresh.bulk", {}, idempotency_key="k-1", now=NOW)
        return first, second, during_run, third

    first, second, during_run, third = asyncio.run(run())
    assert first.deduped is False
    assert second.deduped is True and second.id == first.id
    assert during_run.deduped is True and during_run.id == first.id
    assert third.deduped is False and third.id != first.id
    assert len(repo.jobs) == 2


def test_lease_orders_by_priority_then_run_after_then_creation() -> None:
    repo = InMemoryRepository()
    queue = JobQueue(repo)

    async def run() -> tuple[list[str], list[str]]:
        late = await queue.enqueue("offers.head_refresh.bulk", {}, priority=50, run_after=NOW, now=NOW)
        early = await queue.enqueue(
            "offers.head_refresh.bulk", {}, priority=50, run_after=NOW - timedelta(minutes=5), now=NOW
        )
        urgent = await queue.enqueue("offers.detail_refresh.bulk", {}, priority=10, now=NOW)
        tie = await queue.enqueue("offers.head_refresh.bulk", {}, priority=50, run_after=NOW, now=NOW)
        future = await queue.enqueue(
            "offers.head_refresh.bulk", {}, priority=1, run_after=NOW + timedelta(hours=1), now=NOW
        )
        order: list[str] = []
        while (job := await queue.lease("worker-1", now=NOW)) is not None:
            order.append(job["id"])
        assert future.id not in order
        return [urgent.id, early.id, late.id, tie.id], order

    expected, order = asyncio.run(run())
    assert order == expected


def test_lease_marks_job_running_and_counts_attempts() -> None:
    repo = InMemoryRepository()
    queue = JobQueue(repo)

    async def run() -> dict:
        await queue.enqueue("offers.head_refresh.one", {"offer_id": "o-1"}, now=NOW)
        return await queue.lease("worker-7", now=NOW)

    job = asyncio.run(run())
    assert job["status"] == "running"
    assert job["locked_by"] == "worker-7"
    assert job["locked_at"] == NOW
    assert job["attempts"] == 1


def test_concurrent_leases_claim_each_job_once() -> None:
    repo = InMemoryRepository()
    queue = JobQueue(repo)
    for _ in range(3):
        asyncio.run(queue.enqueue("offers.head_refresh.bulk", {}, now=NOW))

    workers = 16
    barrier = threading.Barrier(workers)

    def lease(index: int) -> dict | None:
        barrier.wait()
        return asyncio.run(queue.lease(f"worker-{index}", now=NOW))

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lease, range(workers)))

    leased = [job for job in results if job is not None]
    assert len(leased) == 3
    assert len({job["id"] for job in leased}) == 3
    assert len({job["locked_by"] for job in leased}) == 3
    assert all(job["attempts"] == 1 for job in repo.jobs.values())


def test_complete_and_fail_require_running_jobs() -> None:
    repo = InMemoryRepository()
    queue = JobQueue(repo)

    async def run() -> None:
        queued = await queue.enqueue("offers.head_refresh.bulk", {}, now=NOW)
        with pytest.raises(JobStateError):
            await queue.complete(queued.id, now=NOW)
        with pytest.raises(JobNotFoundError):
            await queue.fail("missing-job", "boom", now=NOW)

        leased = await queue.lease("worker-1", now=NOW)
        failed = await queue.fail(leased["id"], "fetch exploded", now=NOW)
        assert failed["status"] == "failed"
        assert failed["last_error"] == "fetch exploded"
        assert failed["locked_by"] is None
        with pytest.raises(JobStateError):
            await queue.fail(leased["id"], "again", now=NOW)

    asyncio.run(run())


def test_retry_later_backs_off_then_fails_after_max_attempts() -> None:
    repo = InMemoryRepository()
    queue = JobQueue(repo, max_attempts=3)

    async def run() -> list[dict]:
        enqueued = await queue.enqueue("offers.head_refresh.bulk", {}, now=NOW)
        snapshots = []
        clock = NOW
        for _ in range(3):
            leased = await queue.lease("worker-1", now=clock)
            assert leased is not None and leased["id"] == enqueued.id
            job = await queue.retry_later(leased["id"], "timeout", now=clock)
            snapshots.append(job)
            clock = job["run_after"]
        return snapshots

    first, second, third = asyncio.run(run())
    assert first["status"] == "queued"
    assert first["run_after"] == NOW + timedelta(minutes=1)
    assert second["status"] == "queued"
    assert second["run_after"] == NOW + timedelta(minutes=3)
    assert third["status"] == "failed"
    assert third["last_error"] == "timeout"


def test_compute_retry_delay_minutes_caps_at_one_hour() -> None:
    assert compute_retry_delay_minutes(1) == 1
    assert compute_retry_delay_minutes(2) == 2
    assert compute_retry_delay_minutes(4) == 8
    assert compute_retry_delay_minutes(7) == 60
    assert compute_retry_delay_minutes(30) == 60

"""Classification and remediation of queued, stuck, and failed jobs."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from catalog_sync.schemas.jobs import RecoveryAction
from catalog_sync.services.job_queue import RECOVERY_JOB_PRIORITY, JobQueue
from catalog_sync.services.scheduler import build_idempotency_key, minute_bucket

logger = logging.getLogger(__name__)

DEFAULT_STALE_QUEUED_MINUTES = 120
DEFAULT_STUCK_RUNNING_MINUTES = 45
DEFAULT_RECOVERY_LIMIT = 200
MAX_RECOVERY_LIMIT = 1000
MAX_RECOVERY_MINUTES = 1440


@dataclass(slots=True)
class RecoveryCandidates:
    stale_queued_ids: list[str] = field(default_factory=list)
    stuck_running_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RecoveryActionResult:
    action: RecoveryAction
    affected: int
    job_ids: list[str] = field(default_factory=list)
    deduped: int = 0


@dataclass(slots=True)
class QueueStats:
    by_status: dict[str, int]
    ready_now: int
    stale_queued: int
    stuck_running: int


def classify_recovery_candidates(
    rows: Iterable[Mapping[str, Any]],
    *,
    now: datetime,
    stale_queued_minutes: int = DEFAULT_STALE_QUEUED_MINUTES,
    stuck_running_minutes: int = DEFAULT_STUCK_RUNNING_MINUTES,
) -> RecoveryCandidates:
    """Split job rows into stale-queued, stuck-running, and failed ids.

    Pure function over row snapshots. A queued row is stale when its
    ``run_after`` is strictly before ``now - stale_queued_minutes``; a running
    row is stuck when its ``locked_at`` is strictly before
    ``now - stuck_running_minutes``.
    """
    stale_cutoff = now - timedelta(minutes=stale_queued_minutes)
    stuck_cutoff = now - timedelta(minutes=stuck_running_minutes)
    candidates = RecoveryCandidates()

    for row in rows:
        job_id = str(row.get("id"))
        status = row.get("status")
        if status == "failed":
            candidates.failed_ids.append(job_id)
            continue
        if status == "queued":
            run_after = _coerce_datetime(row.get("run_after"))
            if run_after is not None and run_after < stale_cutoff:
                candidates.stale_queued_ids.append(job_id)
            continue
        if status == "running":
            locked_at = _coerce_datetime(row.get("locked_at"))
            if locked_at is not None and locked_at < stuck_cutoff:
                candidates.stuck_running_ids.append(job_id)

    return candidates


def clamp_recovery_limit(value: int | None) -> int:
    if value is None:
        return DEFAULT_RECOVERY_LIMIT
    return max(1, min(MAX_RECOVERY_LIMIT, value))


def clamp_recovery_minutes(value: int | None, *, default: int) -> int:
    if value is None:
        return default
    return max(1, min(MAX_RECOVERY_MINUTES, value))


async def find_recovery_candidates(
    queue: JobQueue,
    *,
    now: datetime,
    limit: int | None = None,
    stale_queued_minutes: int | None = None,
    stuck_running_minutes: int | None = None,
) -> RecoveryCandidates:
    rows = await queue.store.list_jobs(statuses=("queued", "running", "failed"), limit=clamp_recovery_limit(limit))
    return classify_recovery_candidates(
        rows,
        now=now,
        stale_queued_minutes=clamp_recovery_minutes(stale_queued_minutes, default=DEFAULT_STALE_QUEUED_MINUTES),
        stuck_running_minutes=clamp_recovery_minutes(stuck_running_minutes, default=DEFAULT_STUCK_RUNNING_MINUTES),
    )


async def apply_recovery_action(
    queue: JobQueue,
    action: RecoveryAction,
    *,
    now: datetime | None = None,
    limit: int | None = None,
    stale_queued_minutes: int | None = None,
    stuck_running_minutes: int | None = None,
    priority: int = RECOVERY_JOB_PRIORITY,
) -> RecoveryActionResult:
    now = now or datetime.now(timezone.utc)
    bounded_limit = clamp_recovery_limit(limit)
    stale_minutes = clamp_recovery_minutes(stale_queued_minutes, default=DEFAULT_STALE_QUEUED_MINUTES)
    stuck_minutes = clamp_recovery_minutes(stuck_running_minutes, default=DEFAULT_STUCK_RUNNING_MINUTES)

    if action == "enqueue_freshness_refresh":
        return await _enqueue_freshness_refresh(queue, now=now, priority=priority)

    source_status = {
        "retry_failed_jobs": "failed",
        "requeue_stale_queued_jobs": "queued",
        "recover_stuck_running_jobs": "running",
    }[action]
    rows = await queue.store.list_jobs(statuses=(source_status,), limit=bounded_limit)
    candidates = classify_recovery_candidates(
        rows,
        now=now,
        stale_queued_minutes=stale_minutes,
        stuck_running_minutes=stuck_minutes,
    )
    target_ids = {
        "failed": candidates.failed_ids,
        "queued": candidates.stale_queued_ids,
        "running": candidates.stuck_running_ids,
    }[source_status]

    requeued = await queue.store.requeue_jobs(
        target_ids,
        from_status=source_status,
        now=now,
        reset_attempts=action == "retry_failed_jobs",
    )
    logger.info("recovery action=%s candidates=%s requeued=%s", action, len(target_ids), len(requeued))
    return RecoveryActionResult(action=action, affected=len(requeued), job_ids=requeued)


async def collect_queue_stats(
    queue: JobQueue,
    *,
    now: datetime,
    stale_queued_minutes: int = DEFAULT_STALE_QUEUED_MINUTES,
    stuck_running_minutes: int = DEFAULT_STUCK_RUNNING_MINUTES,
) -> QueueStats:
    stale_minutes = clamp_recovery_minutes(stale_queued_minutes, default=DEFAULT_STALE_QUEUED_MINUTES)
    stuck_minutes = clamp_recovery_minutes(stuck_running_minutes, default=DEFAULT_STUCK_RUNNING_MINUTES)
    by_status = await queue.store.count_jobs_by_status()
    health = await queue.store.count_queue_health(
        now=now,
        stale_before=now - timedelta(minutes=stale_minutes),
        stuck_before=now - timedelta(minutes=stuck_minutes),
    )
    return QueueStats(
        by_status={status: by_status.get(status, 0) for status in ("queued", "running", "succeeded", "failed")},
        ready_now=health["ready_now"],
        stale_queued=health["stale_queued"],
        stuck_running=health["stuck_running"],
    )


async def _enqueue_freshness_refresh(queue: JobQueue, *, now: datetime, priority: int) -> RecoveryActionResult:
    bucket = minute_bucket(now)
    job_ids: list[str] = []
    deduped = 0
    for target, kind in (
        ("offers-head", "offers.head_refresh.bulk"),
        ("offers-detail", "offers.detail_refresh.bulk"),
    ):
        enqueued = await queue.enqueue(
            kind,
            {"older_than_hours": 0, "limit": 200},
            idempotency_key=build_idempotency_key("admin-recovery", target, bucket),
            priority=priority,
            now=now,
        )
        job_ids.append(enqueued.id)
        if enqueued.deduped:
            deduped += 1
    logger.info("recovery action=enqueue_freshness_refresh bucket=%s deduped=%s", bucket, deduped)
    return RecoveryActionResult(
        action="enqueue_freshness_refresh",
        affected=len(job_ids) - deduped,
        job_ids=job_ids,
        deduped=deduped,
    )


def _coerce_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return None
        try:
            return datetime.fromisoformat(candidate.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None

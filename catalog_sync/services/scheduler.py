from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from catalog_sync.services.job_queue import DEFAULT_JOB_PRIORITY, JobQueue, JobValidationError

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ScheduledSource:
    slug: str
    kind: str
    every_minutes: int
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = DEFAULT_JOB_PRIORITY
    enabled: bool = True


@dataclass(slots=True)
class ScheduleTickResult:
    scanned: int = 0
    enqueued: int = 0
    deduped: int = 0
    skipped: int = 0
    errors: int = 0


SCHEDULED_SOURCES: tuple[ScheduledSource, ...] = (
    ScheduledSource(
        slug="offers-head",
        kind="offers.head_refresh.bulk",
        every_minutes=60,
        payload={"older_than_hours": 20, "limit": 75, "timeout_ms": 6000},
    ),
    ScheduledSource(
        slug="offers-detail",
        kind="offers.detail_refresh.bulk",
        every_minutes=120,
        payload={"older_than_hours": 20, "limit": 60, "timeout_ms": 12000},
    ),
)


def minute_bucket(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M")


def schedule_bucket(now: datetime, every_minutes: int) -> int:
    epoch_minutes = int(now.timestamp() // 60)
    return epoch_minutes // max(1, every_minutes)


def build_idempotency_key(kind: str, target: str, bucket: str | int) -> str:
    return f"{kind}:{target}:{bucket}"


async def enqueue_scheduled_jobs(
    queue: JobQueue,
    *,
    now: datetime | None = None,
    sources: tuple[ScheduledSource, ...] = SCHEDULED_SOURCES,
) -> ScheduleTickResult:
    """Enqueue one job per source and schedule bucket.

    Repeated ticks inside the same bucket collapse onto the job already queued.
    """
    now = now or datetime.now(timezone.utc)
    result = ScheduleTickResult()
    for source in sources:
        result.scanned += 1
        if not source.enabled:
            result.skipped += 1
            continue

        key = build_idempotency_key("schedule", source.slug, schedule_bucket(now, source.every_minutes))
        # A bucket runs once, even after its job has finished.
        existing = await queue.find_by_idempotency_key(key)
        if existing is not None:
            result.deduped += 1
            continue

        try:
            enqueued = await queue.enqueue(
                source.kind,
                dict(source.payload),
                idempotency_key=key,
                priority=source.priority,
                now=now,
            )
        except JobValidationError:
            logger.exception("scheduled source has an invalid job spec slug=%s kind=%s", source.slug, source.kind)
            result.errors += 1
            continue

        if enqueued.deduped:
            result.deduped += 1
        else:
            result.enqueued += 1

    logger.info(
        "schedule tick scanned=%s enqueued=%s deduped=%s skipped=%s errors=%s",
        result.scanned,
        result.enqueued,
        result.deduped,
        result.skipped,
        result.errors,
    )
    return result

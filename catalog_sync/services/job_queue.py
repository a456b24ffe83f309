from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from pydantic import ValidationError

from catalog_sync.schemas.jobs import JOB_KINDS, JOB_SPEC_ADAPTER
from catalog_sync.services.repository import RepositoryConflictError, RepositoryNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_JOB_PRIORITY = 100
RECOVERY_JOB_PRIORITY = 20
MANUAL_JOB_PRIORITY = 10
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_MAX_MINUTES = 60


class JobQueueError(Exception):
    """Base job queue error."""


class JobValidationError(JobQueueError):
    """Raised when a job kind is unknown or its payload has the wrong shape."""


class JobNotFoundError(JobQueueError):
    """Raised when a job id does not exist."""


class JobStateError(JobQueueError):
    """Raised when a transition is requested from the wrong status."""


class JobStore(Protocol):
    async def insert_job(
        self,
        *,
        kind: str,
        payload: dict[str, Any],
        idempotency_key: str | None,
        priority: int,
        run_after: datetime,
        max_attempts: int,
        now: datetime,
    ) -> tuple[dict[str, Any], bool]: ...

    async def claim_next_job(self, *, worker_id: str, now: datetime) -> dict[str, Any] | None: ...

    async def get_job(self, job_id: str) -> dict[str, Any]: ...

    async def mark_job_succeeded(
        self, job_id: str, *, result: dict[str, Any] | None, now: datetime
    ) -> dict[str, Any]: ...

    async def mark_job_failed(self, job_id: str, *, error: str, now: datetime) -> dict[str, Any]: ...

    async def mark_job_retry(
        self, job_id: str, *, error: str, run_after: datetime, now: datetime
    ) -> dict[str, Any]: ...

    async def list_jobs(self, *, statuses: Iterable[str], limit: int) -> list[dict[str, Any]]: ...

    async def requeue_jobs(
        self,
        job_ids: Iterable[str],
        *,
        from_status: str,
        now: datetime,
        reset_attempts: bool = False,
    ) -> list[str]: ...

    async def find_job_by_idempotency_key(self, idempotency_key: str) -> dict[str, Any] | None: ...

    async def count_jobs_by_status(self) -> dict[str, int]: ...

    async def count_queue_health(
        self, *, now: datetime, stale_before: datetime, stuck_before: datetime
    ) -> dict[str, int]: ...


@dataclass(slots=True)
class EnqueueResult:
    id: str
    deduped: bool


def validate_job_spec(kind: str, payload: Any) -> dict[str, Any]:
    """Check ``payload`` against the schema registered for ``kind``.

    Returns the payload with defaults filled in. Unknown kinds and malformed
    payloads raise ``JobValidationError``.
    """
    if kind not in JOB_KINDS:
        raise JobValidationError(f"unknown job kind: {kind}")
    if not isinstance(payload, dict):
        raise JobValidationError("job payload must be an object")
    try:
        spec = JOB_SPEC_ADAPTER.validate_python({"kind": kind, "payload": payload})
    except ValidationError as exc:
        raise JobValidationError(f"invalid payload for {kind}: {exc.errors(include_url=False)}") from exc
    return spec.payload.model_dump()


def compute_retry_delay_minutes(attempts: int, *, max_minutes: int = DEFAULT_RETRY_MAX_MINUTES) -> int:
    return min(max_minutes, 2 ** max(0, attempts - 1))


class JobQueue:
    def __init__(
        self,
        store: JobStore,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_max_minutes: int = DEFAULT_RETRY_MAX_MINUTES,
    ) -> None:
        self.store = store
        self.max_attempts = max(1, max_attempts)
        self.retry_max_minutes = max(1, retry_max_minutes)

    async def enqueue(
        self,
        kind: str,
        payload: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
        priority: int = DEFAULT_JOB_PRIORITY,
        run_after: datetime | None = None,
        now: datetime | None = None,
    ) -> EnqueueResult:
        validated = validate_job_spec(kind, payload if payload is not None else {})
        now = now or datetime.now(timezone.utc)
        key = idempotency_key.strip() if idempotency_key else None
        job, deduped = await self.store.insert_job(
            kind=kind,
            payload=validated,
            idempotency_key=key or None,
            priority=priority,
            run_after=run_after or now,
            max_attempts=self.max_attempts,
            now=now,
        )
        if deduped:
            logger.info("job enqueue deduped id=%s kind=%s key=%s", job["id"], kind, key)
        else:
            logger.info("job enqueued id=%s kind=%s priority=%s", job["id"], kind, priority)
        return EnqueueResult(id=job["id"], deduped=deduped)

    async def find_by_idempotency_key(self, idempotency_key: str) -> dict[str, Any] | None:
        """Most recent job carrying ``idempotency_key`` in any status."""
        key = idempotency_key.strip()
        if not key:
            return None
        return await self.store.find_job_by_idempotency_key(key)

    async def lease(self, worker_id: str, now: datetime | None = None) -> dict[str, Any] | None:
        job = await self.store.claim_next_job(worker_id=worker_id, now=now or datetime.now(timezone.utc))
        if job is not None:
            logger.info(
                "job leased id=%s kind=%s worker=%s attempt=%s",
                job["id"],
                job["kind"],
                worker_id,
                job["attempts"],
            )
        return job

    async def get(self, job_id: str) -> dict[str, Any]:
        try:
            return await self.store.get_job(job_id)
        except RepositoryNotFoundError as exc:
            raise JobNotFoundError(str(exc)) from exc

    async def complete(
        self,
        job_id: str,
        result: dict[str, Any] | None = None,
        *,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        try:
            job = await self.store.mark_job_succeeded(job_id, result=result, now=now or datetime.now(timezone.utc))
        except RepositoryNotFoundError as exc:
            raise JobNotFoundError(str(exc)) from exc
        except RepositoryConflictError as exc:
            raise JobStateError(str(exc)) from exc
        logger.info("job succeeded id=%s kind=%s", job["id"], job["kind"])
        return job

    async def fail(self, job_id: str, error: str, *, now: datetime | None = None) -> dict[str, Any]:
        try:
            job = await self.store.mark_job_failed(job_id, error=error, now=now or datetime.now(timezone.utc))
        except RepositoryNotFoundError as exc:
            raise JobNotFoundError(str(exc)) from exc
        except RepositoryConflictError as exc:
            raise JobStateError(str(exc)) from exc
        logger.warning("job failed id=%s kind=%s error=%s", job["id"], job["kind"], error)
        return job

    async def retry_later(self, job_id: str, error: str, *, now: datetime | None = None) -> dict[str, Any]:
        """Send a running job back to the queue with exponential backoff.

        Jobs that have used up ``max_attempts`` are failed instead.
        """
        now = now or datetime.now(timezone.utc)
        current = await self.get(job_id)
        if current["status"] != "running":
            raise JobStateError("job is not running")
        if current["attempts"] >= current["max_attempts"]:
            return await self.fail(job_id, error, now=now)

        delay_minutes = compute_retry_delay_minutes(current["attempts"], max_minutes=self.retry_max_minutes)
        try:
            job = await self.store.mark_job_retry(
                job_id,
                error=error,
                run_after=now + timedelta(minutes=delay_minutes),
                now=now,
            )
        except RepositoryNotFoundError as exc:
            raise JobNotFoundError(str(exc)) from exc
        except RepositoryConflictError as exc:
            raise JobStateError(str(exc)) from exc
        logger.info(
            "job retry scheduled id=%s kind=%s attempt=%s delay_minutes=%s",
            job["id"],
            job["kind"],
            job["attempts"],
            delay_minutes,
        )
        return job

import logging
from dataclasses import asdict
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from catalog_sync.core.config import get_settings
from catalog_sync.schemas.jobs import (
    EnqueueOut,
    EnqueueRequest,
    JobCompleteOut,
    JobCompleteRequest,
    JobFailRequest,
    JobOut,
    LeasedJobOut,
    LeaseRequest,
    ObservationSummaryOut,
    QueueStatsOut,
    RecoveryActionOut,
    RecoveryActionRequest,
    RecoveryCandidatesOut,
    RefreshTargetOut,
    ScheduleTickOut,
)
from catalog_sync.services.job_queue import (
    JobNotFoundError,
    JobQueue,
    JobQueueError,
    JobStateError,
    JobValidationError,
)
from catalog_sync.services.offer_refresh import (
    OFFER_SOURCE_SLUGS,
    apply_offer_observations,
    select_refresh_targets,
)
from catalog_sync.services.recovery import apply_recovery_action, collect_queue_stats, find_recovery_candidates
from catalog_sync.services.repository import RepositoryUnavailableError, get_repository
from catalog_sync.services.scheduler import enqueue_scheduled_jobs

router = APIRouter()
logger = logging.getLogger(__name__)


def get_job_queue(repository=Depends(get_repository)) -> JobQueue:
    settings = get_settings()
    return JobQueue(
        repository,
        max_attempts=settings.job_max_attempts,
        retry_max_minutes=settings.job_retry_max_minutes,
    )


@router.post("", response_model=EnqueueOut, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_job(payload: EnqueueRequest, queue: JobQueue = Depends(get_job_queue)) -> EnqueueOut:
    priority = payload.priority if payload.priority is not None else get_settings().default_job_priority
    try:
        enqueued = await queue.enqueue(
            payload.kind,
            payload.payload,
            idempotency_key=payload.idempotency_key,
            priority=priority,
            run_after=payload.run_after,
        )
    except JobValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return EnqueueOut(id=enqueued.id, deduped=enqueued.deduped)


@router.post(
    "/lease",
    response_model=LeasedJobOut,
    responses={status.HTTP_204_NO_CONTENT: {"description": "No job is ready"}},
)
async def lease_job(
    payload: LeaseRequest,
    queue: JobQueue = Depends(get_job_queue),
    repository=Depends(get_repository),
):
    now = datetime.now(timezone.utc)
    try:
        job = await queue.lease(payload.worker_id, now=now)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if job is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    try:
        targets = await select_refresh_targets(
            repository,
            job,
            now=now,
            default_window_hours=get_settings().offer_refresh_default_hours,
        )
    except Exception as exc:
        await _release_leased_job(queue, job, exc)
        if isinstance(exc, RepositoryUnavailableError):
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        raise

    return LeasedJobOut(job=JobOut(**job), targets=[RefreshTargetOut(**target) for target in targets])


async def _release_leased_job(queue: JobQueue, job: dict, exc: Exception) -> None:
    error = f"target selection failed: {str(exc) or exc.__class__.__name__}"
    try:
        await queue.retry_later(job["id"], error)
    except (JobQueueError, RepositoryUnavailableError):
        logger.exception("leased job could not be released id=%s kind=%s", job["id"], job["kind"])
    else:
        logger.warning("leased job released id=%s kind=%s error=%s", job["id"], job["kind"], error)


@router.get("/stats", response_model=QueueStatsOut)
async def get_queue_stats(queue: JobQueue = Depends(get_job_queue)) -> QueueStatsOut:
    settings = get_settings()
    try:
        stats = await collect_queue_stats(
            queue,
            now=datetime.now(timezone.utc),
            stale_queued_minutes=settings.stale_queued_minutes,
            stuck_running_minutes=settings.stuck_running_minutes,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return QueueStatsOut(**asdict(stats))


@router.get("/recovery", response_model=RecoveryCandidatesOut)
async def get_recovery_candidates(
    queue: JobQueue = Depends(get_job_queue),
    limit: int | None = Query(default=None, ge=1),
    stale_queued_minutes: int | None = Query(default=None, ge=1),
    stuck_running_minutes: int | None = Query(default=None, ge=1),
) -> RecoveryCandidatesOut:
    settings = get_settings()
    try:
        candidates = await find_recovery_candidates(
            queue,
            now=datetime.now(timezone.utc),
            limit=limit if limit is not None else settings.recovery_limit,
            stale_queued_minutes=stale_queued_minutes or settings.stale_queued_minutes,
            stuck_running_minutes=stuck_running_minutes or settings.stuck_running_minutes,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return RecoveryCandidatesOut(**asdict(candidates))


@router.post("/recovery", response_model=RecoveryActionOut)
async def run_recovery_action(
    payload: RecoveryActionRequest,
    queue: JobQueue = Depends(get_job_queue),
) -> RecoveryActionOut:
    settings = get_settings()
    try:
        result = await apply_recovery_action(
            queue,
            payload.action,
            now=datetime.now(timezone.utc),
            limit=payload.limit if payload.limit is not None else settings.recovery_limit,
            stale_queued_minutes=payload.stale_queued_minutes or settings.stale_queued_minutes,
            stuck_running_minutes=payload.stuck_running_minutes or settings.stuck_running_minutes,
            priority=settings.recovery_job_priority,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return RecoveryActionOut(**asdict(result))


@router.post("/schedule", response_model=ScheduleTickOut)
async def run_schedule_tick(queue: JobQueue = Depends(get_job_queue)) -> ScheduleTickOut:
    try:
        result = await enqueue_scheduled_jobs(queue, now=datetime.now(timezone.utc))
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ScheduleTickOut(**asdict(result))


@router.get("/{job_id}", response_model=JobOut)
async def get_job(job_id: str, queue: JobQueue = Depends(get_job_queue)) -> JobOut:
    try:
        job = await queue.get(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return JobOut(**job)


@router.post("/{job_id}/complete", response_model=JobCompleteOut)
async def complete_job(
    job_id: str,
    payload: JobCompleteRequest,
    queue: JobQueue = Depends(get_job_queue),
    repository=Depends(get_repository),
) -> JobCompleteOut:
    now = datetime.now(timezone.utc)
    try:
        current = await queue.get(job_id)
        if current["status"] != "running":
            raise JobStateError("job is not running")
        applied = await apply_offer_observations(
            repository,
            payload.observations,
            source_slug=OFFER_SOURCE_SLUGS.get(current["kind"], "offers-head"),
            now=now,
        )
        job = await queue.complete(job_id, {**payload.result, "applied": asdict(applied)}, now=now)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except JobStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return JobCompleteOut(job=JobOut(**job), applied=ObservationSummaryOut(**asdict(applied)))


@router.post("/{job_id}/fail", response_model=JobOut)
async def fail_job(job_id: str, payload: JobFailRequest, queue: JobQueue = Depends(get_job_queue)) -> JobOut:
    try:
        if payload.retry:
            job = await queue.retry_later(job_id, payload.error)
        else:
            job = await queue.fail(job_id, payload.error)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except JobStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return JobOut(**job)

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

JobKind = Literal[
    "offers.head_refresh.bulk",
    "offers.head_refresh.one",
    "offers.detail_refresh.bulk",
    "offers.detail_refresh.one",
]
JobStatus = Literal["queued", "running", "succeeded", "failed"]
RecoveryAction = Literal[
    "retry_failed_jobs",
    "requeue_stale_queued_jobs",
    "recover_stuck_running_jobs",
    "enqueue_freshness_refresh",
]

JOB_KINDS: frozenset[str] = frozenset(JobKind.__args__)
ACTIVE_JOB_STATUSES: frozenset[str] = frozenset({"queued", "running"})
TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"succeeded", "failed"})

HEAD_REFRESH_DEFAULT_TIMEOUT_MS = 6000
DETAIL_REFRESH_DEFAULT_TIMEOUT_MS = 12000


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class HeadRefreshBulkPayload(_Payload):
    older_than_hours: int | None = Field(default=None, ge=0, le=24 * 365)
    older_than_days: int | None = Field(default=None, ge=0, le=365)
    limit: int = Field(default=30, ge=1, le=500)
    timeout_ms: int = Field(default=HEAD_REFRESH_DEFAULT_TIMEOUT_MS, ge=500, le=30000)


class DetailRefreshBulkPayload(HeadRefreshBulkPayload):
    timeout_ms: int = Field(default=DETAIL_REFRESH_DEFAULT_TIMEOUT_MS, ge=500, le=30000)


class HeadRefreshOnePayload(_Payload):
    offer_id: str = Field(min_length=1)
    timeout_ms: int = Field(default=HEAD_REFRESH_DEFAULT_TIMEOUT_MS, ge=500, le=30000)


class DetailRefreshOnePayload(HeadRefreshOnePayload):
    timeout_ms: int = Field(default=DETAIL_REFRESH_DEFAULT_TIMEOUT_MS, ge=500, le=30000)


class HeadRefreshBulkJob(BaseModel):
    kind: Literal["offers.head_refresh.bulk"]
    payload: HeadRefreshBulkPayload = Field(default_factory=HeadRefreshBulkPayload)


class HeadRefreshOneJob(BaseModel):
    kind: Literal["offers.head_refresh.one"]
    payload: HeadRefreshOnePayload


class DetailRefreshBulkJob(BaseModel):
    kind: Literal["offers.detail_refresh.bulk"]
    payload: DetailRefreshBulkPayload = Field(default_factory=DetailRefreshBulkPayload)


class DetailRefreshOneJob(BaseModel):
    kind: Literal["offers.detail_refresh.one"]
    payload: DetailRefreshOnePayload


JobSpec = Annotated[
    Union[HeadRefreshBulkJob, HeadRefreshOneJob, DetailRefreshBulkJob, DetailRefreshOneJob],
    Field(discriminator="kind"),
]
JOB_SPEC_ADAPTER: TypeAdapter[JobSpec] = TypeAdapter(JobSpec)


class JobOut(BaseModel):
    id: str
    kind: str
    payload: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = None
    priority: int
    status: JobStatus
    run_after: datetime
    locked_at: datetime | None = None
    locked_by: str | None = None
    attempts: int = 0
    max_attempts: int
    last_error: str | None = None
    result: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime


class EnqueueRequest(BaseModel):
    kind: str
    payload: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = Field(default=None, max_length=300)
    priority: int | None = None
    run_after: datetime | None = None


class EnqueueOut(BaseModel):
    id: str
    deduped: bool


class LeaseRequest(BaseModel):
    worker_id: str = Field(min_length=1, max_length=200)


class RefreshTargetOut(BaseModel):
    offer_id: str
    url: str
    product_id: str
    retailer_id: str
    currency: str | None = None


class LeasedJobOut(BaseModel):
    job: JobOut
    targets: list[RefreshTargetOut] = Field(default_factory=list)


class OfferObservation(BaseModel):
    offer_id: str
    checked_url: str | None = None
    status_code: int | None = None
    in_stock: bool | None = None
    price_cents: int | None = Field(default=None, ge=0)
    currency: str | None = None
    image_url: str | None = None
    parser: str | None = None
    content_hash: str | None = None
    error: str | None = None


class JobCompleteRequest(BaseModel):
    observations: list[OfferObservation] = Field(default_factory=list)
    result: dict[str, Any] = Field(default_factory=dict)


class ObservationSummaryOut(BaseModel):
    scanned: int
    updated: int
    unchanged: int
    missing: int
    errors: int = 0
    summaries_refreshed: int


class JobCompleteOut(BaseModel):
    job: JobOut
    applied: ObservationSummaryOut


class JobFailRequest(BaseModel):
    error: str = Field(min_length=1, max_length=4000)
    retry: bool = False


class QueueStatsOut(BaseModel):
    by_status: dict[str, int]
    ready_now: int
    stale_queued: int
    stuck_running: int


class RecoveryCandidatesOut(BaseModel):
    stale_queued_ids: list[str]
    stuck_running_ids: list[str]
    failed_ids: list[str]


class RecoveryActionRequest(BaseModel):
    action: RecoveryAction
    limit: int | None = None
    stale_queued_minutes: int | None = None
    stuck_running_minutes: int | None = None


class RecoveryActionOut(BaseModel):
    action: RecoveryAction
    affected: int
    job_ids: list[str] = Field(default_factory=list)
    deduped: int = 0


class ScheduleTickOut(BaseModel):
    scanned: int
    enqueued: int
    deduped: int
    skipped: int
    errors: int

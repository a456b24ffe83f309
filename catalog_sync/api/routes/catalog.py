from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status

from catalog_sync.core.config import get_settings
from catalog_sync.schemas.catalog import (
    ActivationOut,
    ActivationRequest,
    ActivationSummaryOut,
    AuditName,
    AuditReportOut,
    LegacyPruneOut,
    LegacyPrunePlanOut,
    LegacyPruneRequest,
)
from catalog_sync.services.audits import run_catalog_audit
from catalog_sync.services.catalog_policy import apply_catalog_activation_policy
from catalog_sync.services.legacy_prune import LegacyPruneTargets, prune_legacy_catalog_rows
from catalog_sync.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


@router.get("/audits/{name}", response_model=AuditReportOut)
async def get_catalog_audit(name: AuditName, repository=Depends(get_repository)) -> AuditReportOut:
    settings = get_settings()
    try:
        report = await run_catalog_audit(
            repository,
            name,
            freshness_window_hours=settings.offer_freshness_window_hours,
            freshness_slo_percent=settings.offer_freshness_slo_percent,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return AuditReportOut(**report.to_dict())


@router.post("/activation", response_model=ActivationOut)
async def run_catalog_activation(
    payload: ActivationRequest | None = None,
    repository=Depends(get_repository),
) -> ActivationOut:
    dry_run = payload.dry_run if payload is not None else False
    try:
        plan = await apply_catalog_activation_policy(repository, dry_run=dry_run)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ActivationOut(
        dry_run=dry_run,
        generated_at=plan.generated_at,
        focus_category_slugs=list(plan.focus_category_slugs),
        products=ActivationSummaryOut(**asdict(plan.products)),
        plants=ActivationSummaryOut(**asdict(plan.plants)),
    )


@router.post("/legacy-prune", response_model=LegacyPruneOut)
async def run_legacy_prune(
    payload: LegacyPruneRequest | None = None,
    repository=Depends(get_repository),
) -> LegacyPruneOut:
    payload = payload or LegacyPruneRequest()
    targets: LegacyPruneTargets | None = None
    if payload.product_ids is not None or payload.plant_ids is not None or payload.offer_ids is not None:
        targets = LegacyPruneTargets(
            product_ids=payload.product_ids or [],
            plant_ids=payload.plant_ids or [],
            offer_ids=payload.offer_ids or [],
        )

    try:
        result = await prune_legacy_catalog_rows(repository, targets=targets, dry_run=payload.dry_run)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return LegacyPruneOut(
        dry_run=result.dry_run,
        plan=LegacyPrunePlanOut(**asdict(result.plan)),
        deleted=result.deleted,
        refreshed_summaries=result.refreshed_summaries,
    )

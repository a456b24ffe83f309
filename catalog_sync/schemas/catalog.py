from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

AuditName = Literal["provenance", "quality", "regression"]
AuditSeverity = Literal["violation", "warning"]


class AuditFindingOut(BaseModel):
    code: str
    severity: AuditSeverity
    scope: str
    message: str
    count: int = 0
    sample: list[str] = Field(default_factory=list)


class AuditReportOut(BaseModel):
    name: AuditName
    generated_at: datetime
    metrics: dict[str, Any] = Field(default_factory=dict)
    findings: list[AuditFindingOut] = Field(default_factory=list)
    has_violations: bool
    has_warnings: bool


class ActivationRequest(BaseModel):
    dry_run: bool = False


class ActivationSummaryOut(BaseModel):
    evaluated: int
    activated: int
    deactivated: int
    sample_activated_slugs: list[str] = Field(default_factory=list)
    sample_deactivated_slugs: list[str] = Field(default_factory=list)


class ActivationOut(BaseModel):
    dry_run: bool
    generated_at: datetime
    focus_category_slugs: list[str]
    products: ActivationSummaryOut
    plants: ActivationSummaryOut


class LegacyPruneRequest(BaseModel):
    dry_run: bool = True
    product_ids: list[str] | None = None
    plant_ids: list[str] | None = None
    offer_ids: list[str] | None = None


class LegacyPrunePlanOut(BaseModel):
    product_ids_to_delete: list[str]
    plant_ids_to_delete: list[str]
    offer_ids_to_delete: list[str]
    refresh_offer_summary_product_ids: list[str]


class LegacyPruneOut(BaseModel):
    dry_run: bool
    plan: LegacyPrunePlanOut
    deleted: dict[str, int] = Field(default_factory=dict)
    refreshed_summaries: int = 0

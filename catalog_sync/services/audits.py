"""Read-only catalog audits built from one generic rule/report type.

Each audit loads a catalog snapshot, evaluates a list of ``AuditRule`` over
rows of that snapshot, and returns an ``AuditReport``. Rules describe what a
violation looks like; the report decides nothing beyond collecting findings
and exposing ``has_violations`` for callers that turn it into an exit code.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Generic, Literal, TypeVar

from catalog_sync.services.catalog_policy import (
    FOCUS_CATEGORY_SLUGS,
    MAX_SAMPLE_SLUGS,
    contains_placeholder_copy,
    has_catalog_image,
    has_citation_source,
    has_non_empty_text,
    has_placeholder_image,
    has_specs_object,
    is_in_stock_priced_offer,
)

AuditSeverity = Literal["violation", "warning"]
AuditName = Literal["provenance", "quality", "regression"]
RowT = TypeVar("RowT", bound=Mapping[str, Any])

CATALOG_OFFER_FRESHNESS_WINDOW_HOURS = 24
CATALOG_OFFER_FRESHNESS_SLO_PERCENT = 95.0


@dataclass(slots=True)
class AuditFinding:
    code: str
    severity: AuditSeverity
    scope: str
    message: str
    count: int = 0
    sample: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AuditRule(Generic[RowT]):
    """A violation predicate plus how to label what it finds.

    Violating rows are grouped by ``scope``; each group yields one finding.
    """

    code: str
    severity: AuditSeverity
    violates: Callable[[RowT], bool]
    message: Callable[[str, Sequence[RowT]], str]
    scope: Callable[[RowT], str]

    def evaluate(self, rows: Iterable[RowT]) -> list[AuditFinding]:
        groups: dict[str, list[RowT]] = {}
        for row in rows:
            if self.violates(row):
                groups.setdefault(self.scope(row), []).append(row)
        return [
            AuditFinding(
                code=self.code,
                severity=self.severity,
                scope=scope,
                message=self.message(scope, matched),
                count=len(matched),
                sample=sorted(_row_label(row) for row in matched)[:MAX_SAMPLE_SLUGS],
            )
            for scope, matched in groups.items()
        ]


@dataclass(slots=True)
class AuditReport:
    name: AuditName
    generated_at: datetime
    metrics: dict[str, Any]
    findings: list[AuditFinding]

    @property
    def has_violations(self) -> bool:
        return any(finding.severity == "violation" for finding in self.findings)

    @property
    def has_warnings(self) -> bool:
        return any(finding.severity == "warning" for finding in self.findings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "generated_at": self.generated_at.isoformat(),
            "metrics": self.metrics,
            "findings": [asdict(finding) for finding in self.findings],
            "has_violations": self.has_violations,
            "has_warnings": self.has_warnings,
        }


@dataclass(slots=True)
class CatalogSnapshot:
    categories: list[dict[str, Any]]
    products: list[dict[str, Any]]
    plants: list[dict[str, Any]]
    offers: list[dict[str, Any]]
    mappings: list[dict[str, Any]]

    def provenance_ids(self, canonical_type: str) -> set[str]:
        return {
            str(mapping["canonical_id"])
            for mapping in self.mappings
            if mapping.get("canonical_type") == canonical_type and mapping.get("entity_type") == canonical_type
        }


def build_audit_report(
    name: AuditName,
    evaluations: Iterable[tuple[AuditRule[Any], Iterable[Mapping[str, Any]]]],
    *,
    metrics: dict[str, Any],
    generated_at: datetime,
) -> AuditReport:
    findings: list[AuditFinding] = []
    for rule, rows in evaluations:
        findings.extend(rule.evaluate(rows))
    findings.sort(key=lambda finding: (finding.code, finding.scope, finding.message))
    return AuditReport(name=name, generated_at=generated_at, metrics=metrics, findings=findings)


async def load_catalog_snapshot(store: Any) -> CatalogSnapshot:
    return CatalogSnapshot(
        categories=await store.list_categories(),
        products=await store.list_products(),
        plants=await store.list_plants(),
        offers=await store.list_offers(),
        mappings=await store.list_canonical_mappings(),
    )


def _row_label(row: Mapping[str, Any]) -> str:
    return str(row.get("slug") or row.get("id") or "")


def _count_message(template: str) -> Callable[[str, Sequence[Any]], str]:
    return lambda scope, rows: template.format(count=len(rows), scope=scope, label=scope.partition(":")[2])


def _fixed_scope(scope: str) -> Callable[[Any], str]:
    return lambda _row: scope


def _active(row: Mapping[str, Any]) -> bool:
    return row.get("status") == "active"


def _provenance_rows(snapshot: CatalogSnapshot) -> dict[str, list[dict[str, Any]]]:
    product_ids = snapshot.provenance_ids("product")
    plant_ids = snapshot.provenance_ids("plant")
    offer_ids = snapshot.provenance_ids("offer")
    active_products = {str(row["id"]) for row in snapshot.products if _active(row)}

    products = [{**row, "backed": str(row["id"]) in product_ids} for row in snapshot.products]
    plants = [{**row, "backed": str(row["id"]) in plant_ids} for row in snapshot.plants]
    offers = [
        {
            **row,
            "backed": str(row["id"]) in offer_ids,
            "product_backed": str(row["product_id"]) in product_ids,
            "displayed": str(row["product_id"]) in active_products,
        }
        for row in snapshot.offers
    ]
    return {"product": products, "plant": plants, "offer": offers}


def _provenance_rules() -> list[tuple[str, AuditRule[Any], AuditRule[Any]]]:
    rules: list[tuple[str, AuditRule[Any], AuditRule[Any]]] = []
    for canonical_type, plural in (("product", "products"), ("plant", "plants")):
        rules.append(
            (
                canonical_type,
                AuditRule(
                    code="canonical_without_provenance",
                    severity="warning",
                    violates=lambda row: not row["backed"],
                    message=_count_message(f"{{count}} canonical {plural} have no ingestion provenance."),
                    scope=_fixed_scope(plural),
                ),
                AuditRule(
                    code="displayed_without_provenance",
                    severity="violation",
                    violates=lambda row: _active(row) and not row["backed"],
                    message=_count_message(f"{{count}} active {plural} have no ingestion provenance."),
                    scope=_fixed_scope(plural),
                ),
            )
        )
    rules.append(
        (
            "offer",
            AuditRule(
                code="canonical_without_provenance",
                severity="warning",
                violates=lambda row: not row["backed"],
                message=_count_message("{count} canonical offers have no ingestion provenance."),
                scope=_fixed_scope("offers"),
            ),
            AuditRule(
                code="displayed_without_provenance",
                severity="violation",
                violates=lambda row: row["displayed"] and not (row["backed"] and row["product_backed"]),
                message=_count_message("{count} offers on active products lack product or offer provenance."),
                scope=_fixed_scope("offers"),
            ),
        )
    )
    return rules


def provenance_evaluations(
    snapshot: CatalogSnapshot,
    *,
    include_canonical: bool = True,
) -> tuple[list[tuple[AuditRule[Any], list[dict[str, Any]]]], dict[str, Any]]:
    rows = _provenance_rows(snapshot)
    evaluations: list[tuple[AuditRule[Any], list[dict[str, Any]]]] = []
    metrics: dict[str, Any] = {"canonical_without_provenance": {}, "displayed_without_provenance": {}}
    for canonical_type, canonical_rule, displayed_rule in _provenance_rules():
        typed_rows = rows[canonical_type]
        plural = f"{canonical_type}s"
        metrics["canonical_without_provenance"][plural] = sum(1 for row in typed_rows if canonical_rule.violates(row))
        metrics["displayed_without_provenance"][plural] = sum(1 for row in typed_rows if displayed_rule.violates(row))
        if include_canonical:
            evaluations.append((canonical_rule, typed_rows))
        evaluations.append((displayed_rule, typed_rows))
    return evaluations, metrics


def run_provenance_audit(snapshot: CatalogSnapshot, *, now: datetime | None = None) -> AuditReport:
    evaluations, metrics = provenance_evaluations(snapshot)
    return build_audit_report(
        "provenance",
        evaluations,
        metrics=metrics,
        generated_at=now or datetime.now(timezone.utc),
    )


def compute_freshness_percent(*, checked_within_window: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(checked_within_window / total * 100, 2)


def run_quality_audit(
    snapshot: CatalogSnapshot,
    *,
    now: datetime | None = None,
    freshness_window_hours: int = CATALOG_OFFER_FRESHNESS_WINDOW_HOURS,
    freshness_slo_percent: float = CATALOG_OFFER_FRESHNESS_SLO_PERCENT,
) -> AuditReport:
    now = now or datetime.now(timezone.utc)
    fresh_cutoff = now - timedelta(hours=freshness_window_hours)
    category_slugs = {row["slug"] for row in snapshot.categories}
    offers_by_product: dict[str, list[dict[str, Any]]] = {}
    for offer in snapshot.offers:
        offers_by_product.setdefault(str(offer["product_id"]), []).append(offer)

    def _is_fresh(offer: Mapping[str, Any]) -> bool:
        checked = offer.get("last_checked_at")
        return isinstance(checked, datetime) and checked >= fresh_cutoff

    focus_products = [
        {
            **product,
            "offers": offers_by_product.get(str(product["id"]), []),
        }
        for product in snapshot.products
        if product.get("category_slug") in FOCUS_CATEGORY_SLUGS and _active(product)
    ]
    category_rows = []
    for slug in FOCUS_CATEGORY_SLUGS:
        in_category = [row for row in focus_products if row.get("category_slug") == slug]
        category_rows.append(
            {
                "slug": slug,
                "present": slug in category_slugs,
                "active_products": len(in_category),
                "priced_products": sum(
                    1 for row in in_category if any(is_in_stock_priced_offer(offer) for offer in row["offers"])
                ),
            }
        )

    active_product_ids = {str(row["id"]) for row in snapshot.products if _active(row)}
    catalog_offers = [offer for offer in snapshot.offers if str(offer["product_id"]) in active_product_ids]
    fresh_count = sum(1 for offer in catalog_offers if _is_fresh(offer))
    freshness_percent = compute_freshness_percent(checked_within_window=fresh_count, total=len(catalog_offers))
    offer_metrics = {
        "total_offers": len(snapshot.offers),
        "active_catalog_offers": len(catalog_offers),
        "checked_within_window": fresh_count,
        "missing_last_checked_at": sum(1 for offer in catalog_offers if offer.get("last_checked_at") is None),
        "freshness_percent": freshness_percent,
        "freshness_window_hours": freshness_window_hours,
        "freshness_slo_percent": freshness_slo_percent,
    }
    active_plants = [row for row in snapshot.plants if _active(row)]

    def category_scope(row: Mapping[str, Any]) -> str:
        return f"category:{row['slug'] if 'present' in row else row['category_slug']}"

    evaluations: list[tuple[AuditRule[Any], Iterable[Mapping[str, Any]]]] = [
        (
            AuditRule(
                code="focus_category_missing",
                severity="violation",
                violates=lambda row: not row["present"],
                message=_count_message("Required focus category '{label}' is missing from canonical categories."),
                scope=category_scope,
            ),
            category_rows,
        ),
        (
            AuditRule(
                code="focus_category_empty",
                severity="violation",
                violates=lambda row: row["present"] and row["active_products"] == 0,
                message=_count_message("Focus category '{label}' has zero active products."),
                scope=category_scope,
            ),
            category_rows,
        ),
        (
            AuditRule(
                code="focus_category_no_priced_offers",
                severity="violation",
                violates=lambda row: row["active_products"] > 0 and row["priced_products"] == 0,
                message=_count_message(
                    "Focus category '{label}' has no active products with in-stock priced offers."
                ),
                scope=category_scope,
            ),
            category_rows,
        ),
        (
            AuditRule(
                code="focus_category_missing_images",
                severity="warning",
                violates=lambda row: not has_catalog_image(row.get("image_url"), row.get("image_urls")),
                message=_count_message("{count} products in '{label}' are missing catalog images."),
                scope=category_scope,
            ),
            focus_products,
        ),
        (
            AuditRule(
                code="focus_category_missing_specs",
                severity="warning",
                violates=lambda row: not has_specs_object(row.get("specs")),
                message=_count_message("{count} products in '{label}' are missing specs objects."),
                scope=category_scope,
            ),
            focus_products,
        ),
        (
            AuditRule(
                code="focus_category_missing_offers",
                severity="warning",
                violates=lambda row: not row["offers"],
                message=_count_message("{count} products in '{label}' have no offers."),
                scope=category_scope,
            ),
            focus_products,
        ),
        (
            AuditRule(
                code="focus_category_stale_offers",
                severity="warning",
                violates=lambda row: bool(row["offers"]) and not any(_is_fresh(offer) for offer in row["offers"]),
                message=_count_message(
                    f"{{count}} products in '{{label}}' have no offer checked in the last {freshness_window_hours}h."
                ),
                scope=category_scope,
            ),
            focus_products,
        ),
        (
            AuditRule(
                code="offers_empty",
                severity="violation",
                violates=lambda row: row["active_catalog_offers"] == 0,
                message=lambda _scope, rows: (
                    "Canonical offers table has zero rows."
                    if rows[0]["total_offers"] == 0
                    else "Active catalog has zero offers attached to active products."
                ),
                scope=_fixed_scope("offers"),
            ),
            [offer_metrics],
        ),
        (
            AuditRule(
                code="offer_freshness_below_slo",
                severity="violation",
                violates=lambda row: row["active_catalog_offers"] > 0
                and row["freshness_percent"] < row["freshness_slo_percent"],
                message=lambda _scope, rows: (
                    f"Offer freshness is {rows[0]['freshness_percent']}% "
                    f"({rows[0]['checked_within_window']}/{rows[0]['active_catalog_offers']} active-catalog offers "
                    f"checked within {freshness_window_hours}h; SLO {freshness_slo_percent}%)."
                ),
                scope=_fixed_scope("offers"),
            ),
            [offer_metrics],
        ),
        (
            AuditRule(
                code="offers_missing_last_checked_at",
                severity="warning",
                violates=lambda row: row.get("last_checked_at") is None,
                message=_count_message("{count} active-catalog offers are missing last_checked_at timestamps."),
                scope=_fixed_scope("offers"),
            ),
            catalog_offers,
        ),
        (
            AuditRule(
                code="plants_missing_images",
                severity="warning",
                violates=lambda row: not has_catalog_image(row.get("image_url"), row.get("image_urls")),
                message=_count_message("{count} active plants are missing images."),
                scope=_fixed_scope("plants"),
            ),
            active_plants,
        ),
        (
            AuditRule(
                code="plants_missing_sources",
                severity="warning",
                violates=lambda row: not has_citation_source(row.get("sources")),
                message=_count_message("{count} active plants are missing sources/citations."),
                scope=_fixed_scope("plants"),
            ),
            active_plants,
        ),
        (
            AuditRule(
                code="plants_missing_description",
                severity="warning",
                violates=lambda row: not has_non_empty_text(row.get("description")),
                message=_count_message("{count} active plants are missing descriptions."),
                scope=_fixed_scope("plants"),
            ),
            active_plants,
        ),
    ]
    metrics = {
        "focus_categories": category_rows,
        "offers": offer_metrics,
        "plants": {"active": len(active_plants)},
    }
    return build_audit_report("quality", evaluations, metrics=metrics, generated_at=now)


def run_regression_audit(snapshot: CatalogSnapshot, *, now: datetime | None = None) -> AuditReport:
    evaluations: list[tuple[AuditRule[Any], Iterable[Mapping[str, Any]]]]
    evaluations, provenance_metrics = provenance_evaluations(snapshot, include_canonical=False)

    active_products = [row for row in snapshot.products if _active(row)]
    active_plants = [row for row in snapshot.plants if _active(row)]
    for rows, plural, copy_fields in (
        (active_products, "products", ("name", "description")),
        (active_plants, "plants", ("common_name", "description", "notes")),
    ):
        evaluations.append(
            (
                AuditRule(
                    code="placeholder_image",
                    severity="violation",
                    violates=lambda row: has_placeholder_image(row.get("image_url"), row.get("image_urls")),
                    message=_count_message(f"{{count}} active {plural} display placeholder images."),
                    scope=_fixed_scope(plural),
                ),
                rows,
            )
        )
        evaluations.append(
            (
                AuditRule(
                    code="placeholder_copy",
                    severity="violation",
                    violates=lambda row, fields=copy_fields: any(
                        contains_placeholder_copy(row.get(name)) for name in fields
                    ),
                    message=_count_message(f"{{count}} active {plural} display placeholder copy."),
                    scope=_fixed_scope(plural),
                ),
                rows,
            )
        )

    return build_audit_report(
        "regression",
        evaluations,
        metrics={"provenance": provenance_metrics},
        generated_at=now or datetime.now(timezone.utc),
    )


async def run_catalog_audit(
    store: Any,
    name: AuditName,
    *,
    now: datetime | None = None,
    freshness_window_hours: int = CATALOG_OFFER_FRESHNESS_WINDOW_HOURS,
    freshness_slo_percent: float = CATALOG_OFFER_FRESHNESS_SLO_PERCENT,
) -> AuditReport:
    snapshot = await load_catalog_snapshot(store)
    if name == "provenance":
        return run_provenance_audit(snapshot, now=now)
    if name == "quality":
        return run_quality_audit(
            snapshot,
            now=now,
            freshness_window_hours=freshness_window_hours,
            freshness_slo_percent=freshness_slo_percent,
        )
    return run_regression_audit(snapshot, now=now)

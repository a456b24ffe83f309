from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from catalog_sync.services.offer_observations import compute_offer_summary

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LegacyPruneTargets:
    product_ids: list[str] = field(default_factory=list)
    plant_ids: list[str] = field(default_factory=list)
    offer_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class LegacyPrunePlan:
    product_ids_to_delete: list[str]
    plant_ids_to_delete: list[str]
    offer_ids_to_delete: list[str]
    refresh_offer_summary_product_ids: list[str]

    @property
    def is_empty(self) -> bool:
        return not (self.product_ids_to_delete or self.plant_ids_to_delete or self.offer_ids_to_delete)


@dataclass(slots=True)
class LegacyPruneResult:
    plan: LegacyPrunePlan
    dry_run: bool
    deleted: dict[str, int] = field(default_factory=dict)
    refreshed_summaries: int = 0


def _unique_sorted(values: Iterable[Any]) -> list[str]:
    return sorted({str(value) for value in values if value is not None and str(value)})


def build_legacy_catalog_prune_plan(
    *,
    targets: LegacyPruneTargets,
    offer_rows: Iterable[Mapping[str, Any]],
) -> LegacyPrunePlan:
    """Expand prune targets into the full set of rows to delete.

    Offers of deleted products are deleted too. Products that lose an offer
    but survive the prune are listed for an offer summary refresh.
    """
    product_ids = _unique_sorted(targets.product_ids)
    plant_ids = _unique_sorted(targets.plant_ids)
    doomed_products = set(product_ids)
    explicit_offer_ids = set(_unique_sorted(targets.offer_ids))

    offer_ids: set[str] = set(explicit_offer_ids)
    refresh_product_ids: set[str] = set()
    for row in offer_rows:
        offer_id = str(row.get("id") or "")
        product_id = str(row.get("product_id") or "")
        if not offer_id:
            continue
        if product_id in doomed_products:
            offer_ids.add(offer_id)
        if offer_id in offer_ids and product_id and product_id not in doomed_products:
            refresh_product_ids.add(product_id)

    return LegacyPrunePlan(
        product_ids_to_delete=product_ids,
        plant_ids_to_delete=plant_ids,
        offer_ids_to_delete=sorted(offer_ids),
        refresh_offer_summary_product_ids=sorted(refresh_product_ids),
    )


async def detect_legacy_catalog_prune_targets(store: Any) -> LegacyPruneTargets:
    """Find canonical rows that no ingestion entity maps onto."""
    mappings = await store.list_canonical_mappings()
    backed: dict[str, set[str]] = {"product": set(), "plant": set(), "offer": set()}
    for mapping in mappings:
        canonical_type = mapping.get("canonical_type")
        if canonical_type in backed and mapping.get("entity_type") == canonical_type:
            backed[canonical_type].add(str(mapping["canonical_id"]))

    products = await store.list_products()
    plants = await store.list_plants()
    offers = await store.list_offers()
    return LegacyPruneTargets(
        product_ids=[str(row["id"]) for row in products if str(row["id"]) not in backed["product"]],
        plant_ids=[str(row["id"]) for row in plants if str(row["id"]) not in backed["plant"]],
        offer_ids=[str(row["id"]) for row in offers if str(row["id"]) not in backed["offer"]],
    )


async def prune_legacy_catalog_rows(
    store: Any,
    *,
    targets: LegacyPruneTargets | None = None,
    dry_run: bool = True,
    now: datetime | None = None,
) -> LegacyPruneResult:
    now = now or datetime.now(timezone.utc)
    if targets is None:
        targets = await detect_legacy_catalog_prune_targets(store)

    plan = build_legacy_catalog_prune_plan(targets=targets, offer_rows=await store.list_offers())
    result = LegacyPruneResult(plan=plan, dry_run=dry_run)
    if dry_run or plan.is_empty:
        logger.info(
            "legacy prune planned dry_run=%s products=%s plants=%s offers=%s",
            dry_run,
            len(plan.product_ids_to_delete),
            len(plan.plant_ids_to_delete),
            len(plan.offer_ids_to_delete),
        )
        return result

    result.deleted = await store.delete_catalog_rows(
        product_ids=plan.product_ids_to_delete,
        plant_ids=plan.plant_ids_to_delete,
        offer_ids=plan.offer_ids_to_delete,
    )
    for product_id in plan.refresh_offer_summary_product_ids:
        offers = await store.list_offers(product_id=product_id)
        await store.upsert_offer_summary(compute_offer_summary(product_id, offers, now=now))
        result.refreshed_summaries += 1

    logger.warning(
        "legacy prune applied products=%s plants=%s offers=%s mappings=%s refreshed_summaries=%s",
        result.deleted.get("products", 0),
        result.deleted.get("plants", 0),
        result.deleted.get("offers", 0),
        result.deleted.get("mappings", 0),
        result.refreshed_summaries,
    )
    return result

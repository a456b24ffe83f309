from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

FOCUS_CATEGORY_SLUGS: tuple[str, ...] = ("tank", "light", "filter", "substrate", "hardscape")
MAX_SAMPLE_SLUGS = 20

PLACEHOLDER_IMAGE_MARKERS: tuple[str, ...] = ("/images/aquascape-hero-2400.jpg",)
PLACEHOLDER_COPY_MARKERS: tuple[str, ...] = (
    "photo coming soon",
    "no photo yet",
    "no details yet",
    "no specs yet",
    "no offers yet",
    "still filling",
    "open for care details",
    "lorem ipsum",
    "tbd",
)

_NON_PRODUCTION_SLUG_RE = re.compile(r"(^|[-_])(vitest|test|e2e|playwright)([-_]|$)", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


class CatalogStore(Protocol):
    async def list_products(self) -> list[dict[str, Any]]: ...

    async def list_plants(self) -> list[dict[str, Any]]: ...

    async def list_offers(
        self, *, product_id: str | None = None, retailer_id: str | None = None
    ) -> list[dict[str, Any]]: ...

    async def get_product(self, product_id: str) -> dict[str, Any] | None: ...

    async def set_product_statuses(self, statuses: Mapping[str, str], *, now: datetime) -> int: ...

    async def set_plant_statuses(self, statuses: Mapping[str, str], *, now: datetime) -> int: ...


@dataclass(slots=True)
class ActivationSummary:
    evaluated: int = 0
    activated: int = 0
    deactivated: int = 0
    sample_activated_slugs: list[str] = field(default_factory=list)
    sample_deactivated_slugs: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CatalogActivationPlan:
    generated_at: datetime
    product_statuses: dict[str, str]
    plant_statuses: dict[str, str]
    products: ActivationSummary
    plants: ActivationSummary
    focus_category_slugs: tuple[str, ...] = FOCUS_CATEGORY_SLUGS


def is_placeholder_image_url(value: str | None) -> bool:
    if not value:
        return False
    normalized = _normalize_image_candidate(value)
    if not normalized:
        return False
    return any(normalized == marker or normalized.endswith(marker) for marker in PLACEHOLDER_IMAGE_MARKERS)


def sanitize_catalog_image_url(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    if not stripped or is_placeholder_image_url(stripped):
        return None
    return stripped


def contains_placeholder_copy(value: str | None) -> bool:
    if not isinstance(value, str):
        return False
    normalized = _WHITESPACE_RE.sub(" ", value).strip().lower()
    if not normalized:
        return False
    return any(marker in normalized for marker in PLACEHOLDER_COPY_MARKERS)


def has_catalog_image(image_url: str | None, image_urls: Any) -> bool:
    if sanitize_catalog_image_url(image_url):
        return True
    if not isinstance(image_urls, list):
        return False
    return any(sanitize_catalog_image_url(item) for item in image_urls)


def has_placeholder_image(image_url: str | None, image_urls: Any) -> bool:
    if is_placeholder_image_url(image_url):
        return True
    if not isinstance(image_urls, list):
        return False
    return any(isinstance(item, str) and is_placeholder_image_url(item) for item in image_urls)


def has_specs_object(specs: Any) -> bool:
    return isinstance(specs, Mapping) and len(specs) > 0


def has_non_empty_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def has_citation_source(sources: Any) -> bool:
    if not isinstance(sources, list):
        return False
    for source in sources:
        if isinstance(source, Mapping):
            source = source.get("url")
        if has_non_empty_text(source):
            return True
    return False


def is_non_production_catalog_slug(slug: str | None) -> bool:
    if not isinstance(slug, str):
        return False
    normalized = slug.strip().lower()
    if not normalized:
        return False
    return _NON_PRODUCTION_SLUG_RE.search(normalized) is not None


def should_product_be_active_for_catalog_policy(*, in_stock_priced_offers: int, specs: Any) -> bool:
    return in_stock_priced_offers > 0 and has_specs_object(specs)


def should_plant_be_active_for_catalog_policy(
    *,
    image_url: str | None,
    image_urls: Any,
    sources: Any,
    description: str | None,
) -> bool:
    return (
        has_catalog_image(image_url, image_urls)
        and has_citation_source(sources)
        and has_non_empty_text(description)
    )


def is_in_stock_priced_offer(offer: Mapping[str, Any]) -> bool:
    return offer.get("in_stock") is True and offer.get("price_cents") is not None


def count_in_stock_priced_offers(offers: Iterable[Mapping[str, Any]]) -> Counter[str]:
    counts: Counter[str] = Counter()
    for offer in offers:
        if is_in_stock_priced_offer(offer):
            counts[str(offer["product_id"])] += 1
    return counts


def desired_product_status(product: Mapping[str, Any], in_stock_priced_offers: int) -> str:
    if is_non_production_catalog_slug(product.get("slug")):
        return "inactive"
    if should_product_be_active_for_catalog_policy(
        in_stock_priced_offers=in_stock_priced_offers,
        specs=product.get("specs"),
    ):
        return "active"
    return "inactive"


def desired_plant_status(plant: Mapping[str, Any]) -> str:
    if is_non_production_catalog_slug(plant.get("slug")):
        return "inactive"
    if should_plant_be_active_for_catalog_policy(
        image_url=plant.get("image_url"),
        image_urls=plant.get("image_urls"),
        sources=plant.get("sources"),
        description=plant.get("description"),
    ):
        return "active"
    return "inactive"


def plan_catalog_activation(
    *,
    products: Iterable[Mapping[str, Any]],
    plants: Iterable[Mapping[str, Any]],
    offers: Iterable[Mapping[str, Any]],
    now: datetime | None = None,
) -> CatalogActivationPlan:
    """Compute the status every focus-category product and every plant should have.

    Only rows whose status changes are included in the status maps.
    """
    priced_counts = count_in_stock_priced_offers(offers)
    product_summary = ActivationSummary()
    plant_summary = ActivationSummary()
    product_statuses: dict[str, str] = {}
    plant_statuses: dict[str, str] = {}

    for product in products:
        if product.get("category_slug") not in FOCUS_CATEGORY_SLUGS:
            continue
        product_summary.evaluated += 1
        status = desired_product_status(product, priced_counts.get(str(product["id"]), 0))
        _record_change(product, status, product_statuses, product_summary)

    for plant in plants:
        plant_summary.evaluated += 1
        _record_change(plant, desired_plant_status(plant), plant_statuses, plant_summary)

    for summary in (product_summary, plant_summary):
        summary.sample_activated_slugs = sorted(set(summary.sample_activated_slugs))[:MAX_SAMPLE_SLUGS]
        summary.sample_deactivated_slugs = sorted(set(summary.sample_deactivated_slugs))[:MAX_SAMPLE_SLUGS]

    return CatalogActivationPlan(
        generated_at=now or datetime.now(timezone.utc),
        product_statuses=product_statuses,
        plant_statuses=plant_statuses,
        products=product_summary,
        plants=plant_summary,
    )


async def apply_catalog_activation_policy(
    store: CatalogStore,
    *,
    dry_run: bool = False,
    now: datetime | None = None,
) -> CatalogActivationPlan:
    now = now or datetime.now(timezone.utc)
    plan = plan_catalog_activation(
        products=await store.list_products(),
        plants=await store.list_plants(),
        offers=await store.list_offers(),
        now=now,
    )
    if not dry_run:
        await store.set_product_statuses(plan.product_statuses, now=now)
        await store.set_plant_statuses(plan.plant_statuses, now=now)
    logger.info(
        "catalog activation dry_run=%s products_activated=%s products_deactivated=%s "
        "plants_activated=%s plants_deactivated=%s",
        dry_run,
        plan.products.activated,
        plan.products.deactivated,
        plan.plants.activated,
        plan.plants.deactivated,
    )
    return plan


async def reevaluate_product_activation(store: CatalogStore, product_id: str, *, now: datetime) -> str | None:
    """Recompute one product's status after its offers changed.

    Products outside the focus categories are left alone.
    """
    product = await store.get_product(product_id)
    if product is None or product.get("category_slug") not in FOCUS_CATEGORY_SLUGS:
        return None
    offers = await store.list_offers(product_id=product_id)
    status = desired_product_status(product, sum(1 for offer in offers if is_in_stock_priced_offer(offer)))
    if status != product.get("status"):
        await store.set_product_statuses({product_id: status}, now=now)
        logger.info("product status changed id=%s slug=%s status=%s", product_id, product.get("slug"), status)
    return status


def _record_change(
    row: Mapping[str, Any],
    status: str,
    statuses: dict[str, str],
    summary: ActivationSummary,
) -> None:
    if row.get("status") == status:
        return
    statuses[str(row["id"])] = status
    slug = str(row.get("slug") or row["id"])
    if status == "active":
        summary.activated += 1
        summary.sample_activated_slugs.append(slug)
    else:
        summary.deactivated += 1
        summary.sample_deactivated_slugs.append(slug)


def _normalize_image_candidate(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        return ""
    without_params = re.split(r"[?#]", stripped, maxsplit=1)[0].strip()
    if not without_params:
        return ""
    if without_params.startswith(("http://", "https://")):
        parsed = urlsplit(without_params)
        if parsed.netloc:
            return f"{parsed.scheme}://{parsed.netloc}{parsed.path}".lower()
    return without_params.lower()

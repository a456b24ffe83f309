from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from catalog_sync.schemas.jobs import OfferObservation
from catalog_sync.services.catalog_policy import reevaluate_product_activation, sanitize_catalog_image_url
from catalog_sync.services.matcher import ExistingCanonicalOffer, OfferMatchResult, match_canonical_offer
from catalog_sync.services.offer_observations import (
    availability_signal_from_status,
    compute_offer_summary,
    plan_offer_observation,
)

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_WINDOW_HOURS = 20
OFFER_SOURCE_SLUGS = {
    "offers.head_refresh.bulk": "offers-head",
    "offers.head_refresh.one": "offers-head",
    "offers.detail_refresh.bulk": "offers-detail",
    "offers.detail_refresh.one": "offers-detail",
}


@dataclass(slots=True)
class ObservationApplyResult:
    scanned: int = 0
    updated: int = 0
    unchanged: int = 0
    missing: int = 0
    errors: int = 0
    summaries_refreshed: int = 0


def resolve_refresh_window_hours(payload: Mapping[str, Any], *, default: int = DEFAULT_REFRESH_WINDOW_HOURS) -> int:
    hours = payload.get("older_than_hours")
    if hours is not None:
        return int(hours)
    days = payload.get("older_than_days")
    if days is not None:
        return int(days) * 24
    return default


def to_refresh_target(offer: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "offer_id": str(offer["id"]),
        "url": str(offer["url"]),
        "product_id": str(offer["product_id"]),
        "retailer_id": str(offer["retailer_id"]),
        "currency": offer.get("currency"),
    }


async def select_refresh_targets(
    repository: Any,
    job: Mapping[str, Any],
    *,
    now: datetime | None = None,
    default_window_hours: int = DEFAULT_REFRESH_WINDOW_HOURS,
) -> list[dict[str, Any]]:
    """List the offers a leased refresh job should visit."""
    now = now or datetime.now(timezone.utc)
    payload = job.get("payload") or {}
    if str(job.get("kind", "")).endswith(".one"):
        offer = await repository.get_offer(str(payload.get("offer_id", "")))
        return [to_refresh_target(offer)] if offer is not None else []

    hours = resolve_refresh_window_hours(payload, default=default_window_hours)
    offers = await repository.list_offers_for_refresh(
        checked_before=now - timedelta(hours=hours),
        limit=int(payload.get("limit", 30)),
    )
    return [to_refresh_target(offer) for offer in offers]


async def resolve_offer_observation(
    store: Any,
    *,
    source_slug: str,
    offer: Mapping[str, Any],
    url: str,
    now: datetime,
) -> OfferMatchResult:
    """Record where an observation came from and which canonical offer it is.

    The refreshed offer row is the canonical record when nothing else matches.
    Mappings set by an admin are read but never overwritten.
    """
    offer_id = str(offer["id"])
    entity = await store.upsert_ingestion_entity(
        source_slug=source_slug,
        entity_type="offer",
        source_entity_id=offer_id,
        url=url,
        now=now,
    )
    mapping = await store.get_canonical_mapping(entity["id"])
    existing_offers = [
        ExistingCanonicalOffer.from_row(row)
        for row in await store.list_offers(
            product_id=str(offer["product_id"]),
            retailer_id=str(offer["retailer_id"]),
        )
    ]
    result = match_canonical_offer(
        existing_entity_canonical_id=mapping["canonical_id"] if mapping else None,
        product_id=str(offer["product_id"]),
        retailer_id=str(offer["retailer_id"]),
        url=url,
        existing_offers=existing_offers,
    )
    if mapping is not None and mapping.get("match_method") == "admin_manual":
        return result

    await store.upsert_canonical_mapping(
        entity_id=entity["id"],
        canonical_type="offer",
        canonical_id=result.canonical_id or offer_id,
        match_method=result.match_method,
        confidence=result.confidence,
        notes={"source": source_slug, "url": url},
        now=now,
    )
    return result


async def apply_offer_observations(
    store: Any,
    observations: Iterable[OfferObservation],
    *,
    source_slug: str,
    now: datetime | None = None,
) -> ObservationApplyResult:
    """Fold worker observations into offers, price history, and summaries.

    Observations that carry an error and no HTTP status leave the offer
    untouched, so a failed fetch never counts as a freshness check.
    """
    now = now or datetime.now(timezone.utc)
    result = ObservationApplyResult()
    checked_product_ids: set[str] = set()
    changed_product_ids: set[str] = set()

    for observation in observations:
        result.scanned += 1
        offer = await store.get_offer(observation.offer_id)
        if offer is None:
            result.missing += 1
            continue
        if observation.error and observation.status_code is None:
            result.errors += 1
            logger.info("offer observation failed offer_id=%s error=%s", observation.offer_id, observation.error)
            continue

        in_stock = observation.in_stock
        if in_stock is None:
            in_stock = availability_signal_from_status(observation.status_code)
        plan = plan_offer_observation(
            offer,
            price_cents=observation.price_cents,
            currency=observation.currency,
            in_stock=in_stock,
            now=now,
        )
        await store.update_offer(offer["id"], plan.changes)
        if plan.price_history is not None:
            await store.insert_price_history(**plan.price_history)

        product_id = str(offer["product_id"])
        image_url = sanitize_catalog_image_url(observation.image_url)
        if image_url:
            await store.update_product_image(product_id, image_url=image_url, now=now)

        await resolve_offer_observation(
            store,
            source_slug=source_slug,
            offer=offer,
            url=observation.checked_url or str(offer["url"]),
            now=now,
        )

        checked_product_ids.add(product_id)
        if plan.meaningful_change:
            result.updated += 1
            changed_product_ids.add(product_id)
            logger.info(
                "offer updated offer_id=%s fields=%s",
                offer["id"],
                ",".join(plan.changed_fields),
            )
        else:
            result.unchanged += 1

    for product_id in sorted(checked_product_ids):
        offers = await store.list_offers(product_id=product_id)
        await store.upsert_offer_summary(compute_offer_summary(product_id, offers, now=now))
        result.summaries_refreshed += 1
    for product_id in sorted(changed_product_ids):
        await reevaluate_product_activation(store, product_id, now=now)

    return result

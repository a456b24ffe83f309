from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal

from catalog_sync.core.urls import build_offer_fingerprint

OfferMatchMethod = Literal["identifier_exact", "product_retailer_url_fingerprint", "new_canonical"]

OFFER_MATCH_CONFIDENCE: Mapping[OfferMatchMethod, int] = {
    "identifier_exact": 100,
    "product_retailer_url_fingerprint": 96,
    "new_canonical": 80,
}


@dataclass(slots=True, frozen=True)
class ExistingCanonicalOffer:
    id: str
    product_id: str
    retailer_id: str
    url: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ExistingCanonicalOffer:
        return cls(
            id=str(row["id"]),
            product_id=str(row["product_id"]),
            retailer_id=str(row["retailer_id"]),
            url=str(row.get("url") or ""),
        )


@dataclass(slots=True, frozen=True)
class OfferMatchResult:
    canonical_id: str | None
    match_method: OfferMatchMethod
    confidence: int


def match_canonical_offer(
    *,
    existing_entity_canonical_id: str | None,
    product_id: str,
    retailer_id: str,
    url: str,
    existing_offers: Sequence[ExistingCanonicalOffer],
) -> OfferMatchResult:
    """Resolve an ingested offer to a canonical offer id.

    Rules run in order and the first hit wins:

    1. ``identifier_exact``: a prior mapping that still points at an existing offer.
    2. ``product_retailer_url_fingerprint``: exactly one existing offer shares the
       product, retailer, and normalized URL. Ambiguous duplicates fall through.
    3. ``new_canonical``: nothing matched; the caller creates a new offer.
    """
    if existing_entity_canonical_id:
        if any(offer.id == existing_entity_canonical_id for offer in existing_offers):
            return _result(existing_entity_canonical_id, "identifier_exact")

    try:
        incoming_fingerprint = build_offer_fingerprint(product_id, retailer_id, url)
    except ValueError:
        incoming_fingerprint = None

    if incoming_fingerprint is not None:
        matches: list[str] = []
        for offer in existing_offers:
            if offer.product_id != product_id or offer.retailer_id != retailer_id:
                continue
            try:
                fingerprint = build_offer_fingerprint(offer.product_id, offer.retailer_id, offer.url)
            except ValueError:
                continue
            if fingerprint == incoming_fingerprint:
                matches.append(offer.id)
        if len(matches) == 1:
            return _result(matches[0], "product_retailer_url_fingerprint")

    return _result(None, "new_canonical")


def _result(canonical_id: str | None, method: OfferMatchMethod) -> OfferMatchResult:
    return OfferMatchResult(canonical_id=canonical_id, match_method=method, confidence=OFFER_MATCH_CONFIDENCE[method])

from __future__ import annotations

from catalog_sync.services.matcher import OFFER_MATCH_CONFIDENCE, ExistingCanonicalOffer, match_canonical_offer


def _offer(offer_id: str, url: str, *, product_id: str = "product-1", retailer_id: str = "retailer-1"):
    return ExistingCanonicalOffer(id=offer_id, product_id=product_id, retailer_id=retailer_id, url=url)


def test_identifier_exact_wins_over_fingerprint_match() -> None:
    existing = [
        _offer("offer-a", "https://shop.example.com/tank-a"),
        _offer("offer-b", "https://shop.example.com/tank-b"),
    ]
    result = match_canonical_offer(
        existing_entity_canonical_id="offer-a",
        product_id="product-1",
        retailer_id="retailer-1",
        url="https://shop.example.com/tank-b",
        existing_offers=existing,
    )
    assert result.canonical_id == "offer-a"
    assert result.match_method == "identifier_exact"
    assert result.confidence == 100


def test_stale_identifier_falls_back_to_fingerprint() -> None:
    existing = [_offer("offer-b", "https://shop.example.com/tank-b")]
    result = match_canonical_offer(
        existing_entity_canonical_id="offer-deleted",
        product_id="product-1",
        retailer_id="retailer-1",
        url="HTTPS://shop.example.com/tank-b/#reviews",
        existing_offers=existing,
    )
    assert result.canonical_id == "offer-b"
    assert result.match_method == "product_retailer_url_fingerprint"
    assert result.confidence == OFFER_MATCH_CONFIDENCE["product_retailer_url_fingerprint"]


def test_ambiguous_fingerprint_is_not_guessed() -> None:
    existing = [
        _offer("offer-a", "https://shop.example.com/tank"),
        _offer("offer-b", "https://shop.example.com/tank/"),
    ]
    result = match_canonical_offer(
        existing_entity_canonical_id=None,
        product_id="product-1",
        retailer_id="retailer-1",
        url="https://shop.example.com/tank",
        existing_offers=existing,
    )
    assert result.canonical_id is None
    assert result.match_method == "new_canonical"
    assert result.confidence == 80


def test_fingerprint_requires_same_product_and_retailer() -> None:
    existing = [_offer("offer-a", "https://shop.example.com/tank", retailer_id="retailer-2")]
    result = match_canonical_offer(
        existing_entity_canonical_id=None,
        product_id="product-1",
        retailer_id="retailer-1",
        url="https://shop.example.com/tank",
        existing_offers=existing,
    )
    assert result.match_method == "new_canonical"


def test_unparseable_urls_are_skipped_without_raising() -> None:
    existing = [_offer("offer-bad", "not a url"), _offer("offer-good", "https://shop.example.com/light")]
    matched = match_canonical_offer(
        existing_entity_canonical_id=None,
        product_id="product-1",
        retailer_id="retailer-1",
        url="https://shop.example.com/light",
        existing_offers=existing,
    )
    unmatched = match_canonical_offer(
        existing_entity_canonical_id=None,
        product_id="product-1",
        retailer_id="retailer-1",
        url="/relative/only",
        existing_offers=existing,
    )
    assert matched.canonical_id == "offer-good"
    assert unmatched.match_method == "new_canonical"


def test_existing_offer_from_row() -> None:
    offer = ExistingCanonicalOffer.from_row(
        {"id": 7, "product_id": "p", "retailer_id": "r", "url": None, "price_cents": 100}
    )
    assert offer == ExistingCanonicalOffer(id="7", product_id="p", retailer_id="r", url="")

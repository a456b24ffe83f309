from datetime import datetime, timedelta, timezone

import pytest

from catalog_sync.services.offer_observations import (
    availability_signal_from_status,
    compute_offer_summary,
    normalize_currency,
    plan_offer_observation,
)

NOW = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)

OFFER = {
    "id": "offer-1",
    "product_id": "product-1",
    "price_cents": 4999,
    "currency": "USD",
    "in_stock": True,
    "last_checked_at": NOW - timedelta(days=2),
}


@pytest.mark.parametrize(
    ("status", "expected"),
    [(200, True), (301, True), (399, True), (404, False), (410, False), (429, None), (503, None), (None, None)],
)
def test_availability_signal_from_status(status, expected) -> None:
    assert availability_signal_from_status(status) is expected


def test_normalize_currency() -> None:
    assert normalize_currency(" eur ") == "EUR"
    assert normalize_currency("EURO") is None
    assert normalize_currency(978) is None


def test_unchanged_observation_only_touches_last_checked_at() -> None:
    plan = plan_offer_observation(OFFER, price_cents=4999, currency="usd", in_stock=True, now=NOW)

    assert plan.changes == {"last_checked_at": NOW}
    assert plan.meaningful_change is False
    assert plan.price_history is None


def test_ambiguous_observation_keeps_stored_stock_and_price() -> None:
    plan = plan_offer_observation(OFFER, price_cents=None, currency=None, in_stock=None, now=NOW)

    assert plan.changes == {"last_checked_at": NOW}
    assert plan.meaningful_change is False


def test_price_change_records_history() -> None:
    plan = plan_offer_observation(OFFER, price_cents=3999, currency=None, in_stock=None, now=NOW)

    assert plan.meaningful_change is True
    assert plan.changed_fields == ["price_cents"]
    assert plan.changes == {"last_checked_at": NOW, "price_cents": 3999, "updated_at": NOW}
    assert plan.price_history == {
        "offer_id": "offer-1",
        "price_cents": 3999,
        "in_stock": True,
        "recorded_at": NOW,
    }


def test_stock_change_without_known_price_skips_history() -> None:
    current = {**OFFER, "price_cents": None}
    plan = plan_offer_observation(current, price_cents=None, currency=None, in_stock=False, now=NOW)

    assert plan.changed_fields == ["in_stock"]
    assert plan.changes["in_stock"] is False
    assert plan.price_history is None


def test_compute_offer_summary() -> None:
    offers = [
        {"in_stock": True, "price_cents": 5999, "last_checked_at": NOW - timedelta(hours=30)},
        {"in_stock": True, "price_cents": 4999, "last_checked_at": NOW - timedelta(hours=2)},
        {"in_stock": False, "price_cents": 1999, "last_checked_at": NOW - timedelta(hours=1)},
        {"in_stock": None, "price_cents": 999, "last_checked_at": None},
    ]

    summary = compute_offer_summary("product-1", offers, now=NOW)

    assert summary["min_price_cents"] == 4999
    assert summary["in_stock_count"] == 2
    assert summary["checked_at"] == NOW - timedelta(hours=1)
    assert summary["stale_flag"] is False

    stale = compute_offer_summary("product-1", offers[:1], now=NOW)
    assert stale["stale_flag"] is True
    assert compute_offer_summary("product-2", [], now=NOW)["stale_flag"] is True

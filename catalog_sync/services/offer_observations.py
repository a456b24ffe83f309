"""Pure rules for folding a refresh observation into an offer row."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

OFFER_SUMMARY_STALE_AFTER_HOURS = 24
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


@dataclass(slots=True)
class OfferObservationPlan:
    changes: dict[str, Any]
    meaningful_change: bool
    price_history: dict[str, Any] | None = None
    changed_fields: list[str] = field(default_factory=list)


def availability_signal_from_status(status: int | None) -> bool | None:
    """Map an HTTP status to a stock signal.

    2xx and 3xx mean the listing is reachable, 404 and 410 mean it is gone, and
    anything else (rate limits, server errors, no response) carries no signal.
    """
    if status is None:
        return None
    if 200 <= status < 400:
        return True
    if status in (404, 410):
        return False
    return None


def normalize_currency(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip().upper()
    if not _CURRENCY_RE.match(normalized):
        return None
    return normalized


def plan_offer_observation(
    current: Mapping[str, Any],
    *,
    price_cents: int | None,
    currency: str | None,
    in_stock: bool | None,
    now: datetime,
) -> OfferObservationPlan:
    """Decide how an observation changes an offer.

    ``None`` means "not observed" and keeps the stored value, so an ambiguous
    fetch never flips stock state. ``last_checked_at`` always moves forward.
    A change in price, currency, or stock is meaningful and earns a price
    history entry when the resulting price and stock are both known.
    """
    next_values = {
        "price_cents": price_cents if price_cents is not None else current.get("price_cents"),
        "currency": normalize_currency(currency) or current.get("currency"),
        "in_stock": in_stock if in_stock is not None else current.get("in_stock"),
    }
    changed_fields = [column for column, value in next_values.items() if value != current.get(column)]

    changes: dict[str, Any] = {"last_checked_at": now}
    price_history: dict[str, Any] | None = None
    if changed_fields:
        changes.update({column: next_values[column] for column in changed_fields})
        changes["updated_at"] = now
        if next_values["price_cents"] is not None and next_values["in_stock"] is not None:
            price_history = {
                "offer_id": str(current["id"]),
                "price_cents": next_values["price_cents"],
                "in_stock": next_values["in_stock"],
                "recorded_at": now,
            }

    return OfferObservationPlan(
        changes=changes,
        meaningful_change=bool(changed_fields),
        price_history=price_history,
        changed_fields=changed_fields,
    )


def compute_offer_summary(
    product_id: str,
    offers: Iterable[Mapping[str, Any]],
    *,
    now: datetime,
    stale_after_hours: int = OFFER_SUMMARY_STALE_AFTER_HOURS,
) -> dict[str, Any]:
    min_price_cents: int | None = None
    in_stock_count = 0
    checked_at: datetime | None = None

    for offer in offers:
        last_checked_at = offer.get("last_checked_at")
        if isinstance(last_checked_at, datetime) and (checked_at is None or last_checked_at > checked_at):
            checked_at = last_checked_at
        if offer.get("in_stock") is not True:
            continue
        in_stock_count += 1
        price = offer.get("price_cents")
        if price is not None and (min_price_cents is None or price < min_price_cents):
            min_price_cents = price

    stale_flag = checked_at is None or checked_at < now - timedelta(hours=stale_after_hours)
    return {
        "product_id": product_id,
        "min_price_cents": min_price_cents,
        "in_stock_count": in_stock_count,
        "checked_at": checked_at,
        "stale_flag": stale_flag,
        "updated_at": now,
    }

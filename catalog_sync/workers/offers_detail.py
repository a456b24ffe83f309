"""Detail refresh: fetch an offer page and extract price, currency, and stock.

Parsers run from most to least structured (JSON-LD offer nodes, then
product meta tags, then visible text) and the first one that yields any
signal wins.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass
from typing import Any

import httpx
from bs4 import BeautifulSoup

from catalog_sync.core.hashing import content_hash
from catalog_sync.schemas.jobs import DETAIL_REFRESH_DEFAULT_TIMEOUT_MS
from catalog_sync.services.offer_observations import availability_signal_from_status, normalize_currency
from catalog_sync.workers.offers_head import DEFAULT_USER_AGENT, HTML_ACCEPT, timeout_seconds_from_payload

logger = logging.getLogger(__name__)

_THOUSANDS_COMMA_RE = re.compile(r",(?=\d{3}(\D|$))")
_TEXT_PRICE_RE = re.compile(r"\$\s*([0-9][0-9,]*(?:\.[0-9]{2})?)")
OUT_OF_STOCK_MARKERS = ("outofstock", "out of stock", "unavailable", "sold out")
IN_STOCK_MARKERS = ("instock", "in stock", "available", "add to cart")


@dataclass(slots=True)
class ParsedOfferDetail:
    price_cents: int | None
    currency: str | None
    in_stock: bool | None
    parser: str
    confidence: str

    @property
    def has_signal(self) -> bool:
        return self.price_cents is not None or self.currency is not None or self.in_stock is not None


def parse_price_cents(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value < 0 or value != value:
            return None
        return int(round(value * 100))
    if not isinstance(value, str):
        return None

    cleaned = re.sub(r"[^0-9.,]", "", value).strip()
    if not cleaned:
        return None
    normalized = _THOUSANDS_COMMA_RE.sub("", cleaned).replace(",", ".")
    try:
        amount = float(normalized)
    except ValueError:
        return None
    if amount < 0:
        return None
    return int(round(amount * 100))


def parse_availability(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if not isinstance(value, str):
        return None
    lowered = value.lower()
    if any(marker in lowered for marker in OUT_OF_STOCK_MARKERS):
        return False
    if any(marker in lowered for marker in IN_STOCK_MARKERS):
        return True
    return None


def parse_offer_detail(html: str) -> tuple[ParsedOfferDetail, str | None]:
    """Return the best parse of ``html`` and its ``og:image`` when present."""
    soup = BeautifulSoup(html, "lxml")
    image_url = _meta_content(soup, "og:image")
    for parser in (_parse_json_ld, _parse_meta_tags, _parse_text):
        parsed = parser(soup)
        if parsed is not None and parsed.has_signal:
            return parsed, image_url
    return ParsedOfferDetail(price_cents=None, currency=None, in_stock=None, parser="none", confidence="low"), image_url


async def execute_offers_detail_refresh(
    job: dict[str, Any],
    targets: list[dict[str, Any]],
    *,
    client: httpx.AsyncClient | None = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> dict[str, Any]:
    payload = job.get("payload") or {}
    timeout_seconds = timeout_seconds_from_payload(payload, default_ms=DETAIL_REFRESH_DEFAULT_TIMEOUT_MS)

    if client is not None:
        observations = [await _fetch_offer(client, target, user_agent=user_agent) for target in targets]
    else:
        async with httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True) as temp_client:
            observations = [await _fetch_offer(temp_client, target, user_agent=user_agent) for target in targets]

    parsers: dict[str, int] = {}
    for observation in observations:
        parsers[observation["parser"]] = parsers.get(observation["parser"], 0) + 1
    return {
        "observations": observations,
        "result": {
            "handled": True,
            "kind": job.get("kind"),
            "scanned": len(observations),
            "failed": sum(1 for observation in observations if observation["error"]),
            "parsers": parsers,
        },
    }


async def _fetch_offer(client: httpx.AsyncClient, target: dict[str, Any], *, user_agent: str) -> dict[str, Any]:
    url = str(target["url"])
    try:
        response = await client.get(url, headers={"User-Agent": user_agent, "Accept": HTML_ACCEPT})
    except httpx.HTTPError as exc:
        logger.info("detail fetch failed offer_id=%s url=%s error=%s", target["offer_id"], url, exc)
        return {
            "offer_id": target["offer_id"],
            "checked_url": url,
            "status_code": None,
            "in_stock": None,
            "price_cents": None,
            "currency": None,
            "image_url": None,
            "parser": "none",
            "content_hash": None,
            "error": str(exc) or exc.__class__.__name__,
        }

    image_url: str | None = None
    if response.status_code < 400:
        parsed, image_url = parse_offer_detail(response.text)
    else:
        parsed = ParsedOfferDetail(price_cents=None, currency=None, in_stock=None, parser="none", confidence="low")

    in_stock = parsed.in_stock
    if in_stock is None:
        in_stock = availability_signal_from_status(response.status_code)

    return {
        "offer_id": target["offer_id"],
        "checked_url": url,
        "status_code": response.status_code,
        "in_stock": in_stock,
        "price_cents": parsed.price_cents,
        "currency": parsed.currency,
        "image_url": image_url,
        "parser": parsed.parser,
        "content_hash": content_hash({**asdict(parsed), "status": response.status_code, "image_url": image_url}),
        "error": None,
    }


def _parse_json_ld(soup: BeautifulSoup) -> ParsedOfferDetail | None:
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        body = (script.string or script.get_text() or "").strip()
        if not body:
            continue
        try:
            document = json.loads(body)
        except json.JSONDecodeError:
            continue

        nodes: list[dict[str, Any]] = []
        _collect_offer_nodes(document, nodes)
        for node in nodes:
            parsed = ParsedOfferDetail(
                price_cents=_first_price(node.get("price"), node.get("lowPrice"), node.get("highPrice")),
                currency=normalize_currency(node.get("priceCurrency")),
                in_stock=parse_availability(node.get("availability")),
                parser="jsonld",
                confidence="high",
            )
            if parsed.has_signal:
                return parsed
    return None


def _parse_meta_tags(soup: BeautifulSoup) -> ParsedOfferDetail | None:
    parsed = ParsedOfferDetail(
        price_cents=_first_price(
            _meta_content(soup, "product:price:amount"),
            _meta_content(soup, "og:price:amount"),
        ),
        currency=normalize_currency(_meta_content(soup, "product:price:currency"))
        or normalize_currency(_meta_content(soup, "og:price:currency")),
        in_stock=_first_known(
            parse_availability(_meta_content(soup, "product:availability")),
            parse_availability(_meta_content(soup, "availability")),
        ),
        parser="meta",
        confidence="medium",
    )
    return parsed if parsed.has_signal else None


def _parse_text(soup: BeautifulSoup) -> ParsedOfferDetail | None:
    for node in soup(["script", "style"]):
        node.decompose()
    text = soup.get_text(" ")
    match = _TEXT_PRICE_RE.search(text)

    lowered = text.lower()
    in_stock: bool | None = None
    if "currently unavailable" in lowered or "out of stock" in lowered or "sold out" in lowered:
        in_stock = False
    elif "in stock" in lowered or "add to cart" in lowered:
        in_stock = True

    parsed = ParsedOfferDetail(
        price_cents=parse_price_cents(match.group(0)) if match else None,
        currency=None,
        in_stock=in_stock,
        parser="text",
        confidence="low",
    )
    return parsed if parsed.has_signal else None


def _collect_offer_nodes(value: Any, out: list[dict[str, Any]]) -> None:
    if isinstance(value, list):
        for item in value:
            _collect_offer_nodes(item, out)
        return
    if not isinstance(value, dict):
        return

    raw_type = value.get("@type")
    types = raw_type if isinstance(raw_type, list) else [raw_type]
    if any("offer" in str(item or "").lower() for item in types):
        out.append(value)
    for child in value.values():
        _collect_offer_nodes(child, out)


def _meta_content(soup: BeautifulSoup, name: str) -> str | None:
    tag = soup.find("meta", attrs={"property": name}) or soup.find("meta", attrs={"name": name})
    if tag is None:
        return None
    content = tag.get("content")
    if not isinstance(content, str) or not content.strip():
        return None
    return content.strip()


def _first_price(*values: Any) -> int | None:
    for value in values:
        cents = parse_price_cents(value)
        if cents is not None:
            return cents
    return None


def _first_known(*values: bool | None) -> bool | None:
    for value in values:
        if value is not None:
            return value
    return None

from __future__ import annotations

import logging
from typing import Any

import httpx

from catalog_sync.core.hashing import content_hash
from catalog_sync.schemas.jobs import HEAD_REFRESH_DEFAULT_TIMEOUT_MS
from catalog_sync.services.offer_observations import availability_signal_from_status

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "catalog-sync-offer-refresh/1.0"
HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


async def execute_offers_head_refresh(
    job: dict[str, Any],
    targets: list[dict[str, Any]],
    *,
    client: httpx.AsyncClient | None = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> dict[str, Any]:
    """Check each target with a HEAD request and report reachability."""
    payload = job.get("payload") or {}
    timeout_seconds = timeout_seconds_from_payload(payload, default_ms=HEAD_REFRESH_DEFAULT_TIMEOUT_MS)

    if client is not None:
        observations = [await _check_offer(client, target, user_agent=user_agent) for target in targets]
    else:
        async with httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True) as temp_client:
            observations = [await _check_offer(temp_client, target, user_agent=user_agent) for target in targets]

    failed = sum(1 for observation in observations if observation["error"])
    return {
        "observations": observations,
        "result": {
            "handled": True,
            "kind": job.get("kind"),
            "scanned": len(observations),
            "failed": failed,
        },
    }


async def _check_offer(client: httpx.AsyncClient, target: dict[str, Any], *, user_agent: str) -> dict[str, Any]:
    url = str(target["url"])
    try:
        response = await client.head(url, headers={"User-Agent": user_agent, "Accept": HTML_ACCEPT})
    except httpx.HTTPError as exc:
        logger.info("head check failed offer_id=%s url=%s error=%s", target["offer_id"], url, exc)
        return {
            "offer_id": target["offer_id"],
            "checked_url": url,
            "status_code": None,
            "in_stock": None,
            "parser": "head",
            "content_hash": None,
            "error": str(exc) or exc.__class__.__name__,
        }

    snapshot = {
        "status": response.status_code,
        "final_url": str(response.url),
        "content_type": response.headers.get("content-type"),
    }
    return {
        "offer_id": target["offer_id"],
        "checked_url": url,
        "status_code": response.status_code,
        "in_stock": availability_signal_from_status(response.status_code),
        "parser": "head",
        "content_hash": content_hash(snapshot),
        "error": None,
    }


def timeout_seconds_from_payload(payload: dict[str, Any], *, default_ms: int) -> float:
    try:
        timeout_ms = int(payload.get("timeout_ms", default_ms))
    except (TypeError, ValueError):
        timeout_ms = default_ms
    return min(30000, max(500, timeout_ms)) / 1000.0

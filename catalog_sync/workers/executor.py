from __future__ import annotations

from typing import Any

from catalog_sync.workers.offers_detail import execute_offers_detail_refresh
from catalog_sync.workers.offers_head import DEFAULT_USER_AGENT, execute_offers_head_refresh


class UnsupportedJobKindError(ValueError):
    """Raised when a leased job has no handler in this worker."""


async def execute_job(
    job: dict[str, Any],
    targets: list[dict[str, Any]],
    *,
    user_agent: str = DEFAULT_USER_AGENT,
) -> dict[str, Any]:
    kind = str(job.get("kind", ""))
    if kind.startswith("offers.head_refresh."):
        return await execute_offers_head_refresh(job, targets, user_agent=user_agent)
    if kind.startswith("offers.detail_refresh."):
        return await execute_offers_detail_refresh(job, targets, user_agent=user_agent)
    raise UnsupportedJobKindError(f"unsupported job kind: {kind}")

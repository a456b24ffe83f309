#!/usr/bin/env python3
"""Apply catalog activation policy or prune legacy rows from the command line."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from typing import Any

from catalog_sync.core.telemetry import configure_logging
from catalog_sync.services.catalog_policy import apply_catalog_activation_policy
from catalog_sync.services.legacy_prune import prune_legacy_catalog_rows
from catalog_sync.services.repository import get_repository


async def _activation(dry_run: bool) -> dict[str, Any]:
    repository = get_repository()
    try:
        plan = await apply_catalog_activation_policy(repository, dry_run=dry_run)
    finally:
        await repository.close()
    return {
        "dry_run": dry_run,
        "generated_at": plan.generated_at.isoformat(),
        "products": asdict(plan.products),
        "plants": asdict(plan.plants),
    }


async def _legacy_prune(apply: bool) -> dict[str, Any]:
    repository = get_repository()
    try:
        result = await prune_legacy_catalog_rows(repository, dry_run=not apply)
    finally:
        await repository.close()
    return {
        "dry_run": result.dry_run,
        "plan": asdict(result.plan),
        "deleted": result.deleted,
        "refreshed_summaries": result.refreshed_summaries,
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Catalog maintenance tasks.")
    subparsers = parser.add_subparsers(dest="command", required=True)
    activation = subparsers.add_parser("activation", help="Recompute product and plant statuses")
    activation.add_argument("--dry-run", action="store_true", help="Report changes without writing them")
    prune = subparsers.add_parser("legacy-prune", help="Delete catalog rows without ingestion provenance")
    prune.add_argument("--apply", action="store_true", help="Delete rows instead of only planning")
    args = parser.parse_args(argv)

    configure_logging()
    if args.command == "activation":
        output = asyncio.run(_activation(args.dry_run))
    else:
        output = asyncio.run(_legacy_prune(args.apply))
    print(json.dumps(output, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""Run a catalog audit and exit non-zero when it finds violations."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from catalog_sync.core.config import get_settings
from catalog_sync.core.telemetry import configure_logging
from catalog_sync.services.audits import AuditReport, run_catalog_audit
from catalog_sync.services.repository import get_repository


def render_report(report: AuditReport) -> str:
    lines = [f"{report.name} audit generated_at={report.generated_at.isoformat()}"]
    if not report.findings:
        lines.append("  no findings")
    for finding in report.findings:
        lines.append(f"  [{finding.severity}] {finding.code} {finding.scope}: {finding.message}")
        if finding.sample:
            lines.append(f"    sample: {', '.join(finding.sample)}")
    return "\n".join(lines)


async def _run(name: str) -> AuditReport:
    settings = get_settings()
    repository = get_repository()
    try:
        return await run_catalog_audit(
            repository,
            name,
            freshness_window_hours=settings.offer_freshness_window_hours,
            freshness_slo_percent=settings.offer_freshness_slo_percent,
        )
    finally:
        await repository.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Audit catalog provenance, quality, or regressions.")
    parser.add_argument("--audit", choices=["provenance", "quality", "regression"], default="quality")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    parser.add_argument("--fail-on-warnings", action="store_true", help="Exit non-zero on warnings too")
    args = parser.parse_args(argv)

    configure_logging(get_settings().log_level)
    report = asyncio.run(_run(args.audit))
    if args.json:
        print(json.dumps(report.to_dict(), indent=2, sort_keys=True))
    else:
        print(render_report(report))

    if report.has_violations or (args.fail_on_warnings and report.has_warnings):
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

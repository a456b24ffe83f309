from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from catalog_sync.core.telemetry import configure_logging, setup_worker_telemetry, shutdown_worker_telemetry
from catalog_sync.workers.config import get_settings
from catalog_sync.workers.executor import execute_job
from catalog_sync.workers.job_client import JobClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def process_leased_job(client: JobClient, leased: dict, *, user_agent: str) -> bool:
    """Run one leased job and report its outcome. Returns ``True`` on success."""
    job = leased["job"]
    with tracer.start_as_current_span("worker.process_job") as job_span:
        job_span.set_attribute("job.id", job["id"])
        job_span.set_attribute("job.kind", job["kind"])
        job_span.set_attribute("job.targets", len(leased.get("targets") or []))
        try:
            outcome = await execute_job(job, leased.get("targets") or [], user_agent=user_agent)
        except Exception as exc:
            retry = int(job.get("attempts", 0)) < int(job.get("max_attempts", 1))
            logger.exception("job execution failed id=%s kind=%s retry=%s", job["id"], job["kind"], retry)
            await client.fail_job(job["id"], error=str(exc) or exc.__class__.__name__, retry=retry)
            return False

        await client.complete_job(job["id"], observations=outcome["observations"], result=outcome["result"])
        logger.info(
            "job completed id=%s kind=%s observations=%s",
            job["id"],
            job["kind"],
            len(outcome["observations"]),
        )
        return True


async def run_worker() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    telemetry_runtime = setup_worker_telemetry(settings)
    client = JobClient(base_url=settings.api_base_url, worker_id=settings.worker_id)

    backoff = settings.poll_interval_seconds
    last_schedule_at = 0.0
    last_recovery_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_recovery_at >= settings.recovery_interval_seconds:
                        recovered = await client.recover_stuck_jobs()
                        if recovered:
                            logger.info("recovered stuck running jobs: %s", recovered)
                        last_recovery_at = now

                    if now - last_schedule_at >= settings.schedule_interval_seconds:
                        tick = await client.run_schedule_tick()
                        if tick.get("enqueued"):
                            logger.info("scheduled jobs enqueued: %s", tick["enqueued"])
                        last_schedule_at = now

                    leased = await client.lease_job()
                    if leased is None:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    await process_leased_job(client, leased, user_agent=settings.user_agent)
                    backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - loop robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any

from opentelemetry import trace

from jobboard_worker.core.config import Settings, get_settings
from jobboard_worker.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from jobboard_worker.jobs.executor import execute_job
from jobboard_worker.jobs.expiration import JobInputError
from jobboard_worker.services.job_client import JobClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def process_job(client: JobClient, job: dict[str, Any], settings: Settings) -> str | None:
    """Claim, execute and report one job; returns the submitted status."""
    with tracer.start_as_current_span("worker.process_job") as job_span:
        job_span.set_attribute("job.id", job["id"])
        job_span.set_attribute("job.kind", str(job.get("kind")))
        claimed = await client.claim_job(job["id"], lease_seconds=settings.claim_lease_seconds)
        if claimed is None:
            return None

        try:
            result = await execute_job(claimed, late_warning_seconds=settings.late_wakeup_warning_seconds)
        except JobInputError as exc:
            logger.error("job dead-lettered id=%s kind=%s error=%s", claimed["id"], claimed.get("kind"), exc)
            await client.submit_result(claimed["id"], status="dead_letter", error_json={"error": str(exc)})
            return "dead_letter"
        except Exception as exc:
            logger.exception("job execution failed for id=%s", claimed["id"])
            await client.submit_result(claimed["id"], status="failed", error_json={"error": str(exc)})
            return "failed"

        # Submitting "done" is what expires the posting; a failure here leaves
        # the lease to run out so the job is redelivered.
        submitted = await client.submit_result(claimed["id"], status="done", result_json=result)
        logger.info(
            "job done id=%s target_id=%s lag_seconds=%s",
            claimed["id"],
            claimed.get("target_id"),
            result.get("lag_seconds"),
        )
        return submitted.get("status", "done")


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    client = JobClient(
        base_url=settings.api_base_url,
        module_id=settings.module_id,
        api_key=settings.api_key,
        timeout_seconds=settings.request_timeout_seconds,
    )
    logger.info("worker starting module_id=%s api_base_url=%s", settings.module_id, settings.api_base_url)

    backoff = settings.poll_interval_seconds
    last_reap_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_reap_at >= settings.lease_reaper_interval_seconds:
                        requeued = await client.reap_expired_jobs(limit=settings.lease_reaper_batch_size)
                        if requeued:
                            logger.info("requeued expired leases: %s", requeued)
                        last_reap_at = now

                    jobs = await client.get_jobs(limit=settings.batch_size)
                    if not jobs:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    for job in jobs:
                        await process_job(client, job, settings)

                    backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - network dependent
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()

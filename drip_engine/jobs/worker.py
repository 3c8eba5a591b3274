"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the appropriate scheduler.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from drip_engine.config import settings
from drip_engine.features.lifecycle_campaigns.jobs.campaign_worker import start_drip_campaign_scheduler
from drip_engine.features.lifecycle_campaigns.jobs.outbox_job import start_notification_outbox_scheduler
from drip_engine.infrastructure.observability.logging import get_logger, setup_logging

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "drip_campaigns": start_drip_campaign_scheduler,
    "notification_outbox": start_notification_outbox_scheduler,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "drip_campaigns").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.log_level)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()

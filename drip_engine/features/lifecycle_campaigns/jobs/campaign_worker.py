"""
Drip campaign worker.

Polls the email_jobs table on a fixed interval, claims due jobs and
dispatches them one at a time: campaign steps go to the campaign
processor, one-shot kinds to the outbox processor. One instance runs per
process; the claim lease keeps several processes from taking the same
rows.
"""

import asyncio
import contextlib
from datetime import UTC, datetime, timedelta

from drip_engine.config import settings
from drip_engine.features.lifecycle_campaigns.domain import CampaignJob, JobOutcome
from drip_engine.features.lifecycle_campaigns.repository.job_repository import JobStore, job_repository
from drip_engine.features.lifecycle_campaigns.repository.settings_repository import (
    DRIP_CAMPAIGNS_ENABLED_KEY,
    SettingsStore,
    settings_repository,
)
from drip_engine.features.lifecycle_campaigns.services.outbox_processor import OutboxProcessor
from drip_engine.features.lifecycle_campaigns.services.processor import CampaignProcessor
from drip_engine.features.lifecycle_campaigns.services.transport import WORST_CASE_SEND_SECONDS
from drip_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class CampaignWorkerError(Exception):
    """Custom exception for campaign worker operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class CampaignWorkerMetrics:
    """Metrics for a single worker cycle."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.jobs_claimed = 0
        self.jobs_sent = 0
        self.jobs_skipped = 0
        self.jobs_failed = 0
        self.total_duration_seconds = 0
        self.errors: list[dict] = []

    def record(self, job: CampaignJob, outcome: JobOutcome):
        if outcome is JobOutcome.SENT:
            self.jobs_sent += 1
        elif outcome in (JobOutcome.FAILED, JobOutcome.RETRY_SCHEDULED):
            self.jobs_failed += 1
        else:
            self.jobs_skipped += 1

    def record_error(self, job: CampaignJob, error: str):
        self.jobs_failed += 1
        self.errors.append(
            {
                "job_id": job.id,
                "user_id": job.user_id,
                "error": error,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )
        logger.error("Campaign job processing error", job_id=job.id, user_id=job.user_id, error=error)

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "drip_campaigns",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "jobs_claimed": self.jobs_claimed,
            "jobs_sent": self.jobs_sent,
            "jobs_skipped": self.jobs_skipped,
            "jobs_failed": self.jobs_failed,
            "errors_count": len(self.errors),
        }


class CampaignWorker:
    """
    Background worker for drip campaign jobs.

    The enable switch is explicit: pass ``enabled`` to pin it, otherwise it
    is read at ``start()`` from the DRIP_CAMPAIGNS_ENABLED override or the
    persisted system setting, and defaults to disabled.
    """

    def __init__(
        self,
        processor: CampaignProcessor | None = None,
        outbox_processor: OutboxProcessor | None = None,
        jobs: JobStore | None = None,
        settings_store: SettingsStore | None = None,
        enabled: bool | None = None,
        interval_seconds: float | None = None,
        initial_delay_seconds: float | None = None,
        batch_size: int | None = None,
        lease_seconds: int | None = None,
    ):
        self.processor = processor or CampaignProcessor()
        self.outbox_processor = outbox_processor or OutboxProcessor()
        self.jobs = jobs or job_repository
        self.settings_store = settings_store or settings_repository

        self.interval_seconds = interval_seconds or settings.DRIP_WORKER_INTERVAL_SECONDS
        self.initial_delay_seconds = (
            settings.DRIP_WORKER_INITIAL_DELAY_SECONDS
            if initial_delay_seconds is None
            else initial_delay_seconds
        )
        self.batch_size = batch_size or settings.DRIP_WORKER_BATCH_SIZE
        # Claimed jobs are sent sequentially; the lease must outlast the whole batch
        self.lease_seconds = max(
            lease_seconds or settings.DRIP_CLAIM_LEASE_SECONDS,
            self.batch_size * WORST_CASE_SEND_SECONDS,
        )

        self.campaigns_enabled = bool(enabled)
        self._enabled_pinned = enabled is not None

        self.is_running = False
        self.last_run_at: datetime | None = None
        self.jobs_processed = 0
        self.jobs_skipped = 0
        self.jobs_failed = 0
        self.job_metrics = CampaignWorkerMetrics()
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.info("Campaign worker already started")
            return

        if not self._enabled_pinned:
            self.campaigns_enabled = await self._load_enabled_flag()

        logger.info(
            "Starting campaign worker",
            interval_seconds=self.interval_seconds,
            initial_delay_seconds=self.initial_delay_seconds,
            batch_size=self.batch_size,
            campaigns_enabled=self.campaigns_enabled,
        )
        self._task = asyncio.create_task(self._loop(), name="drip-campaign-worker")

    async def stop(self) -> None:
        if self._task is None:
            return

        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Campaign worker stopped")

    async def _load_enabled_flag(self) -> bool:
        if settings.DRIP_CAMPAIGNS_ENABLED is not None:
            return settings.DRIP_CAMPAIGNS_ENABLED

        try:
            value = await self.settings_store.get_setting(DRIP_CAMPAIGNS_ENABLED_KEY)
        except Exception as e:
            logger.error("Failed to load campaigns enabled setting, defaulting to disabled", error=str(e))
            return False

        return value == "true"

    async def _loop(self) -> None:
        await asyncio.sleep(self.initial_delay_seconds)
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("Error in campaign worker loop", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(self.interval_seconds)

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def run_now(self) -> dict:
        """Run one cycle immediately, subject to the same guards as the loop."""
        return await self.run_once()

    async def run_once(self) -> dict:
        if self.is_running:
            logger.warning("Campaign worker already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        if not self.campaigns_enabled:
            logger.debug("Campaigns disabled, skipping this iteration")
            return {"skipped": True, "reason": "disabled"}

        self.is_running = True
        self.last_run_at = datetime.now(UTC)
        self.job_metrics.reset()

        try:
            try:
                due_jobs = await self.jobs.claim_due_jobs(self.batch_size, self.lease_seconds)
            except Exception as e:
                logger.error("Failed to claim due jobs", error=str(e), error_type=type(e).__name__)
                self.job_metrics.finalize()
                return {**self.job_metrics.to_dict(), "claim_error": str(e)}

            self.job_metrics.jobs_claimed = len(due_jobs)
            if not due_jobs:
                logger.info("No due campaign jobs")
            else:
                logger.info("Processing due campaign jobs", job_count=len(due_jobs))

            for job in due_jobs:
                await self._dispatch(job)

            self.job_metrics.finalize()
            self.jobs_processed += self.job_metrics.jobs_sent
            self.jobs_skipped += self.job_metrics.jobs_skipped
            self.jobs_failed += self.job_metrics.jobs_failed

            metrics = self.job_metrics.to_dict()
            logger.info("Campaign worker cycle completed", **metrics)
            return metrics

        finally:
            self.is_running = False

    async def _dispatch(self, job: CampaignJob) -> None:
        try:
            if job.is_step:
                outcome = await self.processor.process_job(job)
            elif self.outbox_processor.handles(job.kind):
                outcome = await self.outbox_processor.handle_one_shot_job(job)
            else:
                logger.warning("Unknown job kind", job_id=job.id, kind=job.kind)
                await self.jobs.mark_failed(job.id, f"unknown job kind: {job.kind}", job.retry_count)
                outcome = JobOutcome.FAILED

            self.job_metrics.record(job, outcome)

        except Exception as e:
            error = str(e) or type(e).__name__
            self.job_metrics.record_error(job, error)
            try:
                await self.jobs.mark_failed(job.id, error, job.retry_count + 1)
            except Exception as mark_error:
                logger.error("Failed to mark job as failed", job_id=job.id, error=str(mark_error))

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    async def set_enabled(self, enabled: bool) -> None:
        """Flip the enable switch and persist it so it survives restarts."""
        try:
            await self.settings_store.set_setting(DRIP_CAMPAIGNS_ENABLED_KEY, "true" if enabled else "false")
        except Exception as e:
            raise CampaignWorkerError(
                f"Failed to persist campaigns enabled setting: {e}", operation="set_enabled"
            ) from e

        self.campaigns_enabled = enabled
        self._enabled_pinned = True
        logger.info("Campaigns enabled switch changed", campaigns_enabled=enabled)

    def get_status(self) -> dict:
        return {
            "job_name": "drip_campaigns",
            "is_running": self.is_running,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "jobs_processed": self.jobs_processed,
            "jobs_skipped": self.jobs_skipped,
            "jobs_failed": self.jobs_failed,
            "campaigns_enabled": self.campaigns_enabled,
            "worker_active": self._task is not None and not self._task.done(),
            "interval_seconds": self.interval_seconds,
            "batch_size": self.batch_size,
            "lease_seconds": self.lease_seconds,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_at else None,
        }

    def health_check(self) -> dict:
        now = datetime.now(UTC)

        # Overdue when no cycle started within two intervals
        overdue_threshold = timedelta(seconds=self.interval_seconds * 2)
        is_overdue = (
            self.campaigns_enabled
            and self.last_run_at is not None
            and (now - self.last_run_at) > overdue_threshold
        )

        health_status = {
            "healthy": not is_overdue,
            "service": "drip_campaign_worker",
            "is_running": self.is_running,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "is_overdue": is_overdue,
            "campaigns_enabled": self.campaigns_enabled,
            "configuration": {
                "interval_seconds": self.interval_seconds,
                "batch_size": self.batch_size,
                "lease_seconds": self.lease_seconds,
            },
        }

        if is_overdue:
            health_status["warning"] = (
                f"Worker overdue by {(now - self.last_run_at).total_seconds() / 60:.1f} minutes"
            )

        return health_status


_campaign_worker: CampaignWorker | None = None


def get_campaign_worker() -> CampaignWorker:
    """Process-wide worker, built on first use."""
    global _campaign_worker
    if _campaign_worker is None:
        _campaign_worker = CampaignWorker()
    return _campaign_worker


async def start_drip_campaign_scheduler() -> None:
    """
    Entry point for running the campaign worker as a standalone process.

    Opens the database pool, starts the worker and keeps the process alive
    until it is cancelled.
    """
    from drip_engine.db.pool import db_pool

    await db_pool.initialize()
    worker = get_campaign_worker()
    try:
        await worker.start()
        while True:
            await asyncio.sleep(3600)
    finally:
        await worker.stop()
        await db_pool.close()


if __name__ == "__main__":
    asyncio.run(start_drip_campaign_scheduler())

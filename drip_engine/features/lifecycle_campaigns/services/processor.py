"""
Campaign processor: dispatches a single due step job.

The user's state is re-read and re-classified at dispatch time, so a job
created days ago never sends a message that no longer fits the user.
Every early exit is recorded on the job itself; lifecycle outcomes are
never raised.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

from drip_engine.config import settings
from drip_engine.features.lifecycle_campaigns.domain import CampaignJob, JobOutcome
from drip_engine.features.lifecycle_campaigns.domain import step_catalog
from drip_engine.features.lifecycle_campaigns.repository.job_repository import JobStore, job_repository
from drip_engine.features.lifecycle_campaigns.repository.user_repository import (
    UserStore,
    user_repository,
)
from drip_engine.features.lifecycle_campaigns.services.scheduler import (
    CampaignScheduler,
    campaign_scheduler,
    utc_now,
)
from drip_engine.features.lifecycle_campaigns.services.segment_classifier import classify
from drip_engine.features.lifecycle_campaigns.services.templates import render_step
from drip_engine.features.lifecycle_campaigns.services.transport import (
    MessageTransport,
    TransportError,
    build_transport,
)
from drip_engine.infrastructure.observability.logging import get_logger, log_job_outcome

logger = get_logger(__name__)


class CampaignProcessor:
    """Runs the dispatch pipeline for sequenced campaign jobs."""

    def __init__(
        self,
        jobs: JobStore | None = None,
        users: UserStore | None = None,
        transport: MessageTransport | None = None,
        scheduler: CampaignScheduler | None = None,
        clock: Callable[[], datetime] = utc_now,
        frequency_cap_hours: int | None = None,
        max_retries: int | None = None,
    ):
        self.jobs = jobs or job_repository
        self.users = users or user_repository
        self.transport = transport or build_transport()
        self.scheduler = scheduler or campaign_scheduler
        self.clock = clock
        cap_hours = settings.FREQUENCY_CAP_HOURS if frequency_cap_hours is None else frequency_cap_hours
        self.frequency_cap = timedelta(hours=cap_hours)
        self.max_retries = settings.MAX_RETRIES if max_retries is None else max_retries

    async def process(self, job: CampaignJob) -> bool:
        """Dispatch a job. True only when the message was sent."""
        return await self.process_job(job) is JobOutcome.SENT

    async def process_job(self, job: CampaignJob) -> JobOutcome:
        segment = job.segment.value if job.segment else None

        user = await self.users.get_user(job.user_id)
        if user is None:
            return await self._cancel(job, "user not found")

        if user.marketing_opt_out:
            return await self._cancel(job, "opted out")

        if user.is_paid:
            outcome = await self._cancel(job, "now paid")
            await self.jobs.cancel_pending_jobs_for_user(user.user_id, "now paid")
            return outcome

        now = self.clock()
        current = classify(user, now)
        if current is not job.segment:
            reason = f"segment changed to {current.value if current else 'none'}"
            outcome = await self._cancel(job, reason)
            await self.scheduler.schedule_next(user.user_id, user=user)
            return outcome

        last_sent = await self.jobs.get_last_sent_timestamp_for_user(user.user_id)
        if last_sent is not None and now - last_sent < self.frequency_cap:
            deferred_to = last_sent + self.frequency_cap
            await self.jobs.reschedule(job.id, deferred_to)
            log_job_outcome(
                job.id,
                job.user_id,
                JobOutcome.DEFERRED.value,
                segment=segment,
                step=job.step_label,
                reason=f"frequency cap, deferred to {deferred_to.isoformat()}",
            )
            return JobOutcome.DEFERRED

        step = step_catalog.get_step(job.segment, job.step_label) if job.segment else None
        if step is None:
            return await self._fail(job, "step definition not found", job.retry_count)

        try:
            rendered = render_step(user, step, job.metadata.get("overrides"))
            await self.transport.send_sequenced_message(user, step, rendered)
        except TransportError as e:
            if e.recoverable:
                return await self._retry_or_fail(job, str(e))
            return await self._fail(job, str(e), job.retry_count + 1)
        except Exception as e:
            return await self._fail(job, str(e) or type(e).__name__, job.retry_count + 1)

        if not await self.jobs.mark_sent(job.id, self.clock()):
            logger.warning("Job left pending state during send", job_id=job.id, user_id=job.user_id)

        log_job_outcome(job.id, job.user_id, JobOutcome.SENT.value, segment=segment, step=job.step_label)

        try:
            await self.scheduler.schedule_following_step(user.user_id, step)
        except Exception as e:
            logger.error(
                "Failed to schedule following step",
                job_id=job.id,
                user_id=job.user_id,
                step=step.label,
                error=str(e),
            )

        return JobOutcome.SENT

    async def _cancel(self, job: CampaignJob, reason: str) -> JobOutcome:
        await self.jobs.mark_cancelled(job.id, reason)
        log_job_outcome(
            job.id,
            job.user_id,
            JobOutcome.CANCELLED.value,
            segment=job.segment.value if job.segment else None,
            step=job.step_label,
            reason=reason,
        )
        return JobOutcome.CANCELLED

    async def _fail(self, job: CampaignJob, error: str, retry_count: int) -> JobOutcome:
        await self.jobs.mark_failed(job.id, error, retry_count)
        log_job_outcome(
            job.id,
            job.user_id,
            JobOutcome.FAILED.value,
            segment=job.segment.value if job.segment else None,
            step=job.step_label,
            reason=error,
        )
        return JobOutcome.FAILED

    async def _retry_or_fail(self, job: CampaignJob, error: str) -> JobOutcome:
        """Back off and retry a recoverable send failure until MAX_RETRIES is reached."""
        retry_count = job.retry_count + 1
        if retry_count >= self.max_retries:
            return await self._fail(job, error, retry_count)

        retry_at = self.clock() + retry_delay(retry_count)
        await self.jobs.schedule_retry(job.id, error, retry_count, retry_at)
        log_job_outcome(
            job.id,
            job.user_id,
            JobOutcome.RETRY_SCHEDULED.value,
            segment=job.segment.value if job.segment else None,
            step=job.step_label,
            reason=f"{error} (attempt {retry_count}, retry at {retry_at.isoformat()})",
        )
        return JobOutcome.RETRY_SCHEDULED


def retry_delay(retry_count: int) -> timedelta:
    """Exponential backoff from the base delay, capped at the maximum."""
    minutes = settings.DRIP_RETRY_BASE_DELAY_MINUTES * (2 ** (retry_count - 1))
    return timedelta(minutes=min(minutes, settings.DRIP_RETRY_MAX_DELAY_MINUTES))

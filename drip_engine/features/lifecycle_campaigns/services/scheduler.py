"""
Campaign scheduler.

Decides which step of a user's current segment should be enqueued next
and creates the job idempotently (dedupe key per user/segment/step).
Only one future step is materialized at a time; the following step is
created after the current one has been sent.

Business-event handlers (integration connected, subscription changed,
user active) funnel into ``handle_state_change`` so a user moving between
segments never keeps a stale job from the old segment.
"""

from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from drip_engine.config import settings
from drip_engine.features.lifecycle_campaigns.domain import (
    ACTIVITY_READY_JOB_KIND,
    STEP_JOB_KIND,
    CampaignJob,
    JobStatus,
    Segment,
    StepDefinition,
)
from drip_engine.features.lifecycle_campaigns.domain import step_catalog
from drip_engine.features.lifecycle_campaigns.repository.job_repository import JobStore, job_repository
from drip_engine.features.lifecycle_campaigns.repository.user_repository import (
    UserStore,
    user_repository,
)
from drip_engine.features.lifecycle_campaigns.services.segment_classifier import classify
from drip_engine.infrastructure.observability.logging import get_logger
from drip_engine.models.domain.user_domain import CampaignUser

logger = get_logger(__name__)

ACTIVITY_READY_DELAY_MINUTES = 5


def utc_now() -> datetime:
    return datetime.now(UTC)


class CampaignScheduler:
    """Enqueues campaign steps and reacts to user state changes."""

    def __init__(
        self,
        jobs: JobStore | None = None,
        users: UserStore | None = None,
        clock: Callable[[], datetime] = utc_now,
        max_retries: int | None = None,
    ):
        self.jobs = jobs or job_repository
        self.users = users or user_repository
        self.clock = clock
        self.max_retries = settings.MAX_RETRIES if max_retries is None else max_retries

    # ------------------------------------------------------------------
    # Step scheduling
    # ------------------------------------------------------------------

    async def schedule_next(
        self, user_id: str, *, user: CampaignUser | None = None
    ) -> CampaignJob | None:
        """
        Enqueue the first unscheduled step of the user's current segment.

        Returns the created job, or None when nothing was scheduled
        (user missing or opted out, no segment, a step of this segment is
        already pending, or every step already has a job).
        """
        try:
            user = user or await self.users.get_user(user_id)
            if user is None:
                logger.info("Schedule skipped, user not found", user_id=user_id)
                return None
            if user.marketing_opt_out:
                logger.debug("Schedule skipped, user opted out", user_id=user_id)
                return None

            now = self.clock()
            segment = classify(user, now)
            if segment is None:
                logger.debug("Schedule skipped, no campaign applies", user_id=user_id)
                return None

            for step in step_catalog.steps_for(segment):
                key = step_catalog.step_dedupe_key(user.user_id, segment, step.label)
                existing = await self.jobs.get_job_by_dedupe_key(key)

                if existing is None:
                    return await self._create_step_job(user.user_id, step, now)

                if existing.status is JobStatus.PENDING:
                    logger.debug(
                        "Step already scheduled",
                        user_id=user.user_id,
                        segment=segment.value,
                        step=step.label,
                        job_id=existing.id,
                    )
                    return None

            logger.info("Campaign complete for user", user_id=user.user_id, segment=segment.value)
            return None

        except Exception as e:
            logger.error(
                "Failed to schedule next campaign step",
                user_id=user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

    async def schedule_following_step(
        self, user_id: str, step: StepDefinition
    ) -> CampaignJob | None:
        """Enqueue the step after ``step`` in the same segment, if any."""
        following = step_catalog.next_step(step)
        if following is None:
            logger.info(
                "Final campaign step sent",
                user_id=user_id,
                segment=step.segment.value,
                step=step.label,
            )
            return None

        key = step_catalog.step_dedupe_key(user_id, following.segment, following.label)
        if await self.jobs.get_job_by_dedupe_key(key) is not None:
            logger.debug("Following step already exists", user_id=user_id, dedupe_key=key)
            return None

        return await self._create_step_job(user_id, following, self.clock())

    async def _create_step_job(
        self, user_id: str, step: StepDefinition, now: datetime
    ) -> CampaignJob:
        scheduled_at = now + timedelta(hours=step.delay_hours)
        job = await self.jobs.create_job(
            user_id=user_id,
            kind=STEP_JOB_KIND,
            segment=step.segment,
            step_label=step.label,
            scheduled_at=scheduled_at,
            dedupe_key=step_catalog.step_dedupe_key(user_id, step.segment, step.label),
            metadata={"ordinal": step.ordinal, "template_id": step.template_id},
        )
        logger.info(
            "Campaign step scheduled",
            user_id=user_id,
            segment=step.segment.value,
            step=step.label,
            scheduled_at=job.scheduled_at.isoformat(),
        )
        return job

    # ------------------------------------------------------------------
    # Business events
    # ------------------------------------------------------------------

    async def handle_state_change(self, user_id: str, reason: str) -> CampaignJob | None:
        """
        Reconcile pending jobs with the user's current segment.

        Pending step jobs recorded for another segment are cancelled, then the
        current segment's next step is scheduled. When no campaign applies any
        more (paid or opted out) every pending job is cancelled.
        """
        try:
            user = await self.users.get_user(user_id)
            if user is None:
                logger.info("State change ignored, user not found", user_id=user_id, reason=reason)
                return None

            segment = classify(user, self.clock())

            if segment is None:
                await self.jobs.cancel_pending_jobs_for_user(user_id, reason)
                return None

            await self._cancel_stale_step_jobs(user_id, segment, reason)
            return await self.schedule_next(user_id, user=user)

        except Exception as e:
            logger.error(
                "Failed to handle user state change",
                user_id=user_id,
                reason=reason,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

    async def _cancel_stale_step_jobs(self, user_id: str, segment: Segment, reason: str) -> int:
        cancelled = 0
        for job in await self.jobs.list_jobs_for_user(user_id):
            if job.status is not JobStatus.PENDING or not job.is_step or job.segment is segment:
                continue
            if await self.jobs.mark_cancelled(job.id, f"{reason}: segment changed to {segment.value}"):
                cancelled += 1

        if cancelled:
            logger.info(
                "Stale campaign jobs cancelled",
                user_id=user_id,
                new_segment=segment.value,
                count=cancelled,
                reason=reason,
            )
        return cancelled

    async def on_integration_connected(self, user_id: str) -> CampaignJob | None:
        await self._record_user_fields(user_id, {"integration_connected": True})
        return await self.handle_state_change(user_id, "integration_connected")

    async def on_subscription_changed(
        self,
        user_id: str,
        *,
        status: str | None = None,
        tier: str | None = None,
    ) -> CampaignJob | None:
        fields: dict[str, Any] = {}
        if status is not None:
            fields["subscription_status"] = status
        if tier is not None:
            fields["subscription_tier"] = tier
        await self._record_user_fields(user_id, fields)
        return await self.handle_state_change(user_id, "subscription_changed")

    async def on_user_activity(
        self, user_id: str, *, seen_at: datetime | None = None
    ) -> CampaignJob | None:
        await self._record_user_fields(user_id, {"last_seen_at": seen_at or self.clock()})
        return await self.handle_state_change(user_id, "user_active")

    async def _record_user_fields(self, user_id: str, fields: dict[str, Any]) -> None:
        if not fields:
            return
        try:
            await self.users.update_user(user_id, fields)
        except Exception as e:
            logger.error("Failed to record user fields", user_id=user_id, fields=sorted(fields), error=str(e))

    async def exit_campaigns(self, user_id: str, reason: str) -> int:
        """Cancel every pending job for the user."""
        try:
            return await self.jobs.cancel_pending_jobs_for_user(user_id, reason)
        except Exception as e:
            logger.error("Failed to exit campaigns", user_id=user_id, reason=reason, error=str(e))
            return 0

    # ------------------------------------------------------------------
    # One-shot jobs and retries
    # ------------------------------------------------------------------

    async def schedule_one_shot(
        self,
        user_id: str,
        kind: str,
        entity_id: str | int,
        *,
        delay: timedelta = timedelta(0),
        metadata: dict[str, Any] | None = None,
    ) -> CampaignJob | None:
        """Idempotently enqueue a one-shot job tied to a business entity."""
        if kind == STEP_JOB_KIND:
            raise ValueError("Step jobs are scheduled through schedule_next")

        try:
            return await self.jobs.create_job(
                user_id=user_id,
                kind=kind,
                segment=None,
                step_label=None,
                scheduled_at=self.clock() + delay,
                dedupe_key=step_catalog.one_shot_dedupe_key(user_id, kind, entity_id),
                metadata=metadata or {},
            )
        except Exception as e:
            logger.error(
                "Failed to schedule one-shot job",
                user_id=user_id,
                kind=kind,
                entity_id=str(entity_id),
                error=str(e),
            )
            return None

    async def schedule_activity_ready(
        self, user_id: str, activity_id: int | str, activity_name: str | None = None
    ) -> CampaignJob | None:
        return await self.schedule_one_shot(
            user_id,
            ACTIVITY_READY_JOB_KIND,
            activity_id,
            delay=timedelta(minutes=ACTIVITY_READY_DELAY_MINUTES),
            metadata={"activity_id": activity_id, "activity_name": activity_name},
        )

    async def retry_failed_job(self, job_id: str) -> CampaignJob | None:
        """
        Supersede a failed job with a fresh pending copy due now.

        The failed row is left untouched. The copy gets its own dedupe key
        and carries the retry count, which is capped by MAX_RETRIES.
        """
        try:
            job = await self.jobs.get_job(job_id)
        except Exception as e:
            logger.error("Failed to load job for retry", job_id=job_id, error=str(e), error_type=type(e).__name__)
            return None

        if job is None:
            logger.info("Retry skipped, job not found", job_id=job_id)
            return None
        if job.status is not JobStatus.FAILED:
            logger.info("Retry skipped, job not failed", job_id=job_id, status=job.status.value)
            return None
        # Some failures do not bump retry_count, so manual retries are also
        # numbered by their own sequence
        retry_seq = job.metadata.get("retry_seq", 0) + 1
        if max(job.retry_count, retry_seq - 1) >= self.max_retries:
            logger.warning(
                "Retry skipped, retry limit reached",
                job_id=job_id,
                retry_count=job.retry_count,
                retry_seq=retry_seq - 1,
                max_retries=self.max_retries,
            )
            return None

        base_key = job.metadata.get("retry_of_key", job.dedupe_key)
        try:
            retry = await self.jobs.create_job(
                user_id=job.user_id,
                kind=job.kind,
                segment=job.segment,
                step_label=job.step_label,
                scheduled_at=self.clock(),
                dedupe_key=f"{base_key}:retry{retry_seq}",
                metadata={
                    **job.metadata,
                    "retry_of": job.id,
                    "retry_of_key": base_key,
                    "retry_seq": retry_seq,
                },
                retry_count=job.retry_count,
            )
        except Exception as e:
            logger.error("Failed to create retry job", job_id=job_id, error=str(e), error_type=type(e).__name__)
            return None

        if retry.status is not JobStatus.PENDING:
            logger.warning(
                "Retry skipped, retry key already used",
                job_id=job_id,
                existing_job_id=retry.id,
                status=retry.status.value,
            )
            return None

        logger.info("Failed job superseded by retry", job_id=job_id, retry_job_id=retry.id)
        return retry

    async def backfill(self, user_ids: Iterable[str]) -> dict[str, int]:
        """Reconcile many users at once; returns counts per outcome."""
        stats = {"users": 0, "scheduled": 0, "unchanged": 0}
        for user_id in user_ids:
            stats["users"] += 1
            job = await self.handle_state_change(user_id, "backfill")
            if job is None:
                stats["unchanged"] += 1
            else:
                stats["scheduled"] += 1

        logger.info("Campaign backfill completed", **stats)
        return stats


campaign_scheduler = CampaignScheduler()

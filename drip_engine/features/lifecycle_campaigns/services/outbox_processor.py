"""
Generic notification delivery.

Handles everything that is not a sequenced campaign step:
  * rows of the notification_outbox table (recaps, weekly summaries,
    plan reminders, in-app notices), delivered once and never chained
  * one-shot queued jobs such as ``activity_ready``, which share the
    email_jobs table with campaign steps but are not part of a sequence
"""

from dataclasses import asdict, dataclass, field
from typing import Any

from drip_engine.config import settings
from drip_engine.features.lifecycle_campaigns.domain import (
    ACTIVITY_READY_JOB_KIND,
    CampaignJob,
    Channel,
    JobOutcome,
    OutboxNotification,
)
from drip_engine.features.lifecycle_campaigns.repository.job_repository import JobStore, job_repository
from drip_engine.features.lifecycle_campaigns.repository.outbox_repository import (
    OutboxStore,
    outbox_repository,
)
from drip_engine.features.lifecycle_campaigns.repository.user_repository import (
    UserStore,
    user_repository,
)
from drip_engine.features.lifecycle_campaigns.services.templates import render_notification
from drip_engine.features.lifecycle_campaigns.services.transport import (
    MessageTransport,
    build_transport,
)
from drip_engine.infrastructure.observability.logging import get_logger, log_job_outcome

logger = get_logger(__name__)

# Metadata keys a one-shot job must carry, per kind
ONE_SHOT_REQUIRED_METADATA: dict[str, tuple[str, ...]] = {
    ACTIVITY_READY_JOB_KIND: ("activity_id",),
}

ONE_SHOT_TITLES: dict[str, str] = {
    ACTIVITY_READY_JOB_KIND: "Your run analysis is ready",
}


@dataclass
class OutboxResult:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class OutboxProcessor:
    """Delivers pending outbox notifications and one-shot queued jobs."""

    def __init__(
        self,
        outbox: OutboxStore | None = None,
        users: UserStore | None = None,
        jobs: JobStore | None = None,
        transport: MessageTransport | None = None,
    ):
        self.outbox = outbox or outbox_repository
        self.users = users or user_repository
        self.jobs = jobs or job_repository
        self.transport = transport or build_transport()

    @staticmethod
    def handles(kind: str) -> bool:
        return kind in ONE_SHOT_REQUIRED_METADATA

    async def enqueue(
        self,
        *,
        user_id: str,
        type: str,
        title: str,
        body: str,
        dedupe_key: str,
        channel: str = Channel.EMAIL.value,
        data: dict[str, Any] | None = None,
    ) -> OutboxNotification:
        """Idempotently add a notification to the outbox."""
        return await self.outbox.enqueue(
            user_id=user_id,
            type=type,
            channel=channel,
            title=title,
            body=body,
            dedupe_key=dedupe_key,
            data=data,
        )

    async def process_pending(self, limit: int | None = None) -> OutboxResult:
        """
        Deliver up to ``limit`` pending notifications, oldest first.

        Each notification ends as sent or failed. Errors are caught per
        notification so one bad row never blocks the rest of the batch.
        """
        result = OutboxResult()

        try:
            pending = await self.outbox.list_pending(limit or settings.OUTBOX_BATCH_SIZE)
        except Exception as e:
            logger.error("Failed to load pending notifications", error=str(e))
            result.errors.append(f"Fatal: {e}")
            return result

        logger.info("Processing pending notifications", count=len(pending))

        for notification in pending:
            result.processed += 1
            try:
                reason = await self._deliver(notification)
            except Exception as e:
                reason = str(e) or type(e).__name__
                result.errors.append(f"Notification {notification.id}: {reason}")
                logger.error(
                    "Error processing notification",
                    notification_id=notification.id,
                    user_id=notification.user_id,
                    error=reason,
                )

            try:
                if reason is None:
                    await self.outbox.mark_sent(notification.id)
                else:
                    await self.outbox.mark_failed(notification.id, reason)
            except Exception as e:
                status_error = str(e) or type(e).__name__
                result.errors.append(f"Notification {notification.id}: status update failed: {status_error}")
                logger.error(
                    "Failed to record notification status",
                    notification_id=notification.id,
                    user_id=notification.user_id,
                    error=status_error,
                )
                reason = reason or "status update failed"

            if reason is None:
                result.sent += 1
            else:
                result.failed += 1

        logger.info("Notification processing completed", sent=result.sent, failed=result.failed)
        return result

    async def _deliver(self, notification: OutboxNotification) -> str | None:
        """Send one notification. Returns a failure reason, or None when sent."""
        user = await self.users.get_user(notification.user_id)
        if user is None or not user.email:
            return "user not found or no email"

        if notification.channel == Channel.IN_APP.value:
            return None

        if notification.channel != Channel.EMAIL.value:
            return f"unsupported channel: {notification.channel}"

        if not self.transport.is_configured():
            return "email_not_configured"

        rendered = render_notification(user, notification)
        if not await self.transport.send_one_shot_message(user, notification, rendered):
            return "send_failed"

        logger.info(
            "Notification sent",
            notification_id=notification.id,
            user_id=user.user_id,
            type=notification.type,
        )
        return None

    async def process_one_shot_job(self, job: CampaignJob) -> bool:
        """Dispatch a one-shot queued job. True only when the message was sent."""
        return await self.handle_one_shot_job(job) is JobOutcome.SENT

    async def handle_one_shot_job(self, job: CampaignJob) -> JobOutcome:
        user = await self.users.get_user(job.user_id)
        if user is None:
            return await self._finish(job, JobOutcome.CANCELLED, "user not found")
        if not user.email:
            return await self._finish(job, JobOutcome.CANCELLED, "user has no email")

        missing = [key for key in ONE_SHOT_REQUIRED_METADATA.get(job.kind, ()) if not job.metadata.get(key)]
        if missing:
            return await self._finish(job, JobOutcome.FAILED, f"missing metadata: {', '.join(missing)}")

        if not self.transport.is_configured():
            return await self._finish(job, JobOutcome.FAILED, "email_not_configured")

        notification = OutboxNotification(
            id=job.id,
            user_id=job.user_id,
            type=job.kind,
            channel=Channel.EMAIL.value,
            title=job.metadata.get("title") or ONE_SHOT_TITLES.get(job.kind, "Update from AI Tracker"),
            body=job.metadata.get("body") or "",
            dedupe_key=job.dedupe_key,
            data=dict(job.metadata),
        )

        rendered = render_notification(user, notification)
        if not await self.transport.send_one_shot_message(user, notification, rendered):
            return await self._finish(job, JobOutcome.FAILED, "send_failed")

        return await self._finish(job, JobOutcome.SENT)

    async def _finish(self, job: CampaignJob, outcome: JobOutcome, reason: str | None = None) -> JobOutcome:
        if outcome is JobOutcome.SENT:
            await self.jobs.mark_sent(job.id)
        elif outcome is JobOutcome.CANCELLED:
            await self.jobs.mark_cancelled(job.id, reason)
        else:
            await self.jobs.mark_failed(job.id, reason, job.retry_count + 1)

        log_job_outcome(job.id, job.user_id, outcome.value, step=job.kind, reason=reason)
        return outcome

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from drip_engine.auth.verify import admin_dependency
from drip_engine.features.lifecycle_campaigns.domain import (
    CampaignJob,
    JobStatus,
    NotificationStatus,
    OutboxNotification,
    RenderedMessage,
    StepDefinition,
)
from drip_engine.features.lifecycle_campaigns.services.transport import TransportError
from drip_engine.models.domain.user_domain import CampaignUser

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class FrozenClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class InMemoryJobStore:
    """JobStore with the same dedupe and pending-guard rules as the SQL one."""

    def __init__(self, clock: FrozenClock):
        self.clock = clock
        self.jobs: dict[str, CampaignJob] = {}
        self._next_id = 0

    def _pending(self, job_id: str) -> CampaignJob | None:
        job = self.jobs.get(job_id)
        if job is None or job.status is not JobStatus.PENDING:
            return None
        return job

    async def create_job(
        self,
        *,
        user_id,
        kind,
        segment,
        step_label,
        scheduled_at,
        dedupe_key,
        metadata=None,
        retry_count=0,
    ) -> CampaignJob:
        existing = await self.get_job_by_dedupe_key(dedupe_key)
        if existing is not None:
            return existing

        self._next_id += 1
        job = CampaignJob(
            id=f"job-{self._next_id}",
            user_id=user_id,
            kind=kind,
            segment=segment,
            step_label=step_label,
            scheduled_at=scheduled_at,
            dedupe_key=dedupe_key,
            retry_count=retry_count,
            metadata=dict(metadata or {}),
            created_at=self.clock(),
        )
        self.jobs[job.id] = job
        return job

    async def get_job(self, job_id):
        return self.jobs.get(job_id)

    async def get_job_by_dedupe_key(self, dedupe_key):
        for job in self.jobs.values():
            if job.dedupe_key == dedupe_key:
                return job
        return None

    async def mark_sent(self, job_id, sent_at=None):
        job = self._pending(job_id)
        if job is None:
            return False
        job.status = JobStatus.SENT
        job.sent_at = sent_at or self.clock()
        job.locked_until = None
        return True

    async def mark_cancelled(self, job_id, reason):
        job = self._pending(job_id)
        if job is None:
            return False
        job.status = JobStatus.CANCELLED
        job.error_message = reason
        job.locked_until = None
        return True

    async def mark_failed(self, job_id, error, retry_count):
        job = self._pending(job_id)
        if job is None:
            return False
        job.status = JobStatus.FAILED
        job.error_message = error
        job.retry_count = retry_count
        job.locked_until = None
        return True

    async def reschedule(self, job_id, scheduled_at):
        job = self._pending(job_id)
        if job is None:
            return False
        job.scheduled_at = scheduled_at
        job.locked_until = None
        return True

    async def schedule_retry(self, job_id, error, retry_count, scheduled_at):
        job = self._pending(job_id)
        if job is None:
            return False
        job.scheduled_at = scheduled_at
        job.error_message = error
        job.retry_count = retry_count
        job.locked_until = None
        return True

    def _due(self, now: datetime) -> list[CampaignJob]:
        due = [
            job
            for job in self.jobs.values()
            if job.status is JobStatus.PENDING
            and job.scheduled_at <= now
            and (job.locked_until is None or job.locked_until < now)
        ]
        return sorted(due, key=lambda job: job.scheduled_at)

    async def list_due_jobs(self, limit, now=None):
        return self._due(now or self.clock())[:limit]

    async def claim_due_jobs(self, limit, lease_seconds, now=None):
        now = now or self.clock()
        claimed = self._due(now)[:limit]
        for job in claimed:
            job.locked_until = now + timedelta(seconds=lease_seconds)
        return claimed

    async def cancel_pending_jobs_for_user(self, user_id, reason, kind=None):
        cancelled = 0
        for job in list(self.jobs.values()):
            if job.user_id != user_id or (kind is not None and job.kind != kind):
                continue
            if await self.mark_cancelled(job.id, reason):
                cancelled += 1
        return cancelled

    async def get_last_sent_timestamp_for_user(self, user_id):
        sent = [
            job.sent_at
            for job in self.jobs.values()
            if job.user_id == user_id and job.status is JobStatus.SENT and job.is_step
        ]
        return max(sent) if sent else None

    async def list_jobs_for_user(self, user_id):
        return [job for job in self.jobs.values() if job.user_id == user_id]

    # Test helpers
    def for_user(self, user_id: str, status: JobStatus | None = None) -> list[CampaignJob]:
        return [
            job
            for job in self.jobs.values()
            if job.user_id == user_id and (status is None or job.status is status)
        ]


class FakeUserStore:
    def __init__(self):
        self.users: dict[str, CampaignUser] = {}
        self.updates: list[tuple[str, dict]] = []

    def add(self, user: CampaignUser) -> CampaignUser:
        self.users[user.user_id] = user
        return user

    async def get_user(self, user_id):
        return self.users.get(user_id)

    async def update_user(self, user_id, fields):
        self.updates.append((user_id, dict(fields)))
        user = self.users.get(user_id)
        if user is None:
            return False
        self.users[user_id] = user.model_copy(update=fields)
        return True


class FakeSettingsStore:
    def __init__(self, values: dict[str, str] | None = None, fail: bool = False):
        self.values = dict(values or {})
        self.fail = fail

    async def get_setting(self, key):
        if self.fail:
            raise RuntimeError("settings table unavailable")
        return self.values.get(key)

    async def set_setting(self, key, value):
        if self.fail:
            raise RuntimeError("settings table unavailable")
        self.values[key] = value


class FakeOutboxStore:
    def __init__(self):
        self.notifications: dict[str, OutboxNotification] = {}
        self._next_id = 0

    async def enqueue(self, *, user_id, type, channel, title, body, dedupe_key, data=None):
        for notification in self.notifications.values():
            if notification.dedupe_key == dedupe_key:
                return notification

        self._next_id += 1
        notification = OutboxNotification(
            id=f"notif-{self._next_id}",
            user_id=user_id,
            type=type,
            channel=channel,
            title=title,
            body=body,
            dedupe_key=dedupe_key,
            data=dict(data or {}),
        )
        self.notifications[notification.id] = notification
        return notification

    async def list_pending(self, limit):
        pending = [n for n in self.notifications.values() if n.status is NotificationStatus.PENDING]
        return pending[:limit]

    async def mark_sent(self, notification_id):
        notification = self.notifications[notification_id]
        if notification.status is not NotificationStatus.PENDING:
            return False
        notification.status = NotificationStatus.SENT
        return True

    async def mark_failed(self, notification_id, reason):
        notification = self.notifications[notification_id]
        if notification.status is not NotificationStatus.PENDING:
            return False
        notification.status = NotificationStatus.FAILED
        notification.status_reason = reason
        return True


class FakeTransport:
    def __init__(self, configured: bool = True):
        self.configured = configured
        self.sequenced: list[tuple[CampaignUser, StepDefinition, RenderedMessage]] = []
        self.one_shot: list[tuple[CampaignUser, OutboxNotification, RenderedMessage]] = []
        self.sequenced_error: Exception | None = None
        self.one_shot_result = True

    def is_configured(self):
        return self.configured

    async def send_sequenced_message(self, user, step, rendered):
        if self.sequenced_error is not None:
            raise self.sequenced_error
        self.sequenced.append((user, step, rendered))

    async def send_one_shot_message(self, user, notification, rendered):
        if self.one_shot_result:
            self.one_shot.append((user, notification, rendered))
        return self.one_shot_result


def build_user(**overrides: Any) -> CampaignUser:
    values = {
        "user_id": "user-1",
        "email": "runner@example.com",
        "display_name": "Sam",
        "integration_connected": True,
        "subscription_status": "trialing",
        "subscription_tier": "free",
        "last_seen_at": NOW - timedelta(hours=2),
        "marketing_opt_out": False,
    }
    values.update(overrides)
    return CampaignUser(**values)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def job_store(clock):
    return InMemoryJobStore(clock)


@pytest.fixture
def user_store():
    return FakeUserStore()


@pytest.fixture
def settings_store():
    return FakeSettingsStore()


@pytest.fixture
def outbox_store():
    return FakeOutboxStore()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def transport_failure():
    return TransportError("Email API returned 503: unavailable", status_code=503)


@pytest.fixture
def apply_admin_override():
    def _apply(app):
        app.dependency_overrides[admin_dependency] = lambda: None

    return _apply


@pytest.fixture
def make_user():
    return build_user


@pytest.fixture
def make_scheduler(job_store, user_store, clock):
    from drip_engine.features.lifecycle_campaigns.services.scheduler import CampaignScheduler

    def _make(**kwargs):
        return CampaignScheduler(jobs=job_store, users=user_store, clock=clock, **kwargs)

    return _make


@pytest.fixture
def scheduler(make_scheduler):
    return make_scheduler(max_retries=3)


@pytest.fixture
def processor(job_store, user_store, transport, scheduler, clock):
    from drip_engine.features.lifecycle_campaigns.services.processor import CampaignProcessor

    return CampaignProcessor(
        jobs=job_store,
        users=user_store,
        transport=transport,
        scheduler=scheduler,
        clock=clock,
        frequency_cap_hours=24,
    )


@pytest.fixture
def outbox_processor(outbox_store, user_store, job_store, transport):
    from drip_engine.features.lifecycle_campaigns.services.outbox_processor import OutboxProcessor

    return OutboxProcessor(outbox=outbox_store, users=user_store, jobs=job_store, transport=transport)

from datetime import timedelta

import pytest

from drip_engine.features.lifecycle_campaigns.domain import (
    STEP_JOB_KIND,
    JobOutcome,
    JobStatus,
    Segment,
)
from drip_engine.features.lifecycle_campaigns.services.transport import TransportError


async def _step_job(job_store, clock, segment: Segment, label: str, user_id: str = "user-1"):
    return await job_store.create_job(
        user_id=user_id,
        kind=STEP_JOB_KIND,
        segment=segment,
        step_label=label,
        scheduled_at=clock.now,
        dedupe_key=f"{user_id}:{segment.value}:{label}",
    )


@pytest.mark.asyncio
async def test_new_signup_journey(scheduler, processor, user_store, job_store, transport, make_user, clock):
    user_store.add(
        make_user(integration_connected=False, subscription_status="none", last_seen_at=None)
    )

    first = await scheduler.schedule_next("user-1")
    assert first.segment is Segment.NOT_INTEGRATED
    assert first.step_label == "analysis_waiting"
    assert first.scheduled_at == clock.now + timedelta(hours=0.08)

    sent_time = clock.advance(minutes=5)
    assert await processor.process(first) is True

    assert first.status is JobStatus.SENT
    assert first.sent_at == sent_time
    following = [job for job in job_store.for_user("user-1", JobStatus.PENDING)]
    assert len(following) == 1
    assert following[0].step_label == "connect_nudge"
    assert following[0].scheduled_at == sent_time + timedelta(hours=48)

    _, step, rendered = transport.sequenced[0]
    assert step.label == "analysis_waiting"
    assert rendered.subject == "Your running analysis is waiting"
    assert "source=analysis_waiting" in rendered.text


@pytest.mark.asyncio
async def test_integration_connected_before_second_step(
    scheduler, processor, user_store, job_store, transport, make_user, clock
):
    user_store.add(
        make_user(integration_connected=False, subscription_status="none", last_seen_at=None)
    )
    first = await scheduler.schedule_next("user-1")
    await processor.process(first)
    nudge = job_store.for_user("user-1", JobStatus.PENDING)[0]

    clock.advance(hours=48)
    await user_store.update_user(
        "user-1",
        {"integration_connected": True, "subscription_status": "trialing", "last_seen_at": clock.now},
    )

    assert await processor.process(nudge) is False

    assert nudge.status is JobStatus.CANCELLED
    assert nudge.error_message == "segment changed to active_trial"
    pending = job_store.for_user("user-1", JobStatus.PENDING)
    assert [(job.segment, job.step_label) for job in pending] == [
        (Segment.ACTIVE_TRIAL, "coach_grade_ready")
    ]
    assert pending[0].scheduled_at == clock.now + timedelta(hours=1)
    assert len(transport.sequenced) == 1


@pytest.mark.asyncio
async def test_upgrade_to_paid_cancels_all_pending(
    scheduler, processor, user_store, job_store, transport, make_user, clock
):
    user_store.add(make_user())
    job = await scheduler.schedule_next("user-1")
    other = await scheduler.schedule_activity_ready("user-1", 7)
    await user_store.update_user("user-1", {"subscription_status": "active", "subscription_tier": "paid"})

    outcome = await processor.process_job(job)

    assert outcome is JobOutcome.CANCELLED
    assert job.error_message == "now paid"
    assert other.status is JobStatus.CANCELLED
    assert job_store.for_user("user-1", JobStatus.PENDING) == []
    assert await scheduler.schedule_next("user-1") is None
    assert transport.sequenced == []


@pytest.mark.asyncio
async def test_frequency_cap_defers_to_exactly_24h_after_last_send(
    processor, user_store, job_store, transport, make_user, clock
):
    user_store.add(make_user())
    previous = await _step_job(job_store, clock, Segment.ACTIVE_TRIAL, "coach_grade_ready")
    last_sent = clock.now - timedelta(hours=10)
    await job_store.mark_sent(previous.id, sent_at=last_sent)
    due = await _step_job(job_store, clock, Segment.ACTIVE_TRIAL, "daily_recommendation")

    outcome = await processor.process_job(due)

    assert outcome is JobOutcome.DEFERRED
    assert due.status is JobStatus.PENDING
    assert due.scheduled_at == last_sent + timedelta(hours=24)
    assert due.retry_count == 0
    assert transport.sequenced == []


@pytest.mark.asyncio
async def test_frequency_cap_allows_send_after_24h(processor, user_store, job_store, make_user, clock):
    user_store.add(make_user())
    previous = await _step_job(job_store, clock, Segment.ACTIVE_TRIAL, "coach_grade_ready")
    await job_store.mark_sent(previous.id, sent_at=clock.now - timedelta(hours=24))
    due = await _step_job(job_store, clock, Segment.ACTIVE_TRIAL, "daily_recommendation")

    assert await processor.process(due) is True


@pytest.mark.asyncio
async def test_missing_user_cancels(processor, job_store, clock):
    job = await _step_job(job_store, clock, Segment.ACTIVE_TRIAL, "coach_grade_ready", user_id="ghost")

    assert await processor.process_job(job) is JobOutcome.CANCELLED
    assert job.error_message == "user not found"


@pytest.mark.asyncio
async def test_opted_out_user_cancels(processor, user_store, job_store, make_user, clock):
    user_store.add(make_user(marketing_opt_out=True))
    job = await _step_job(job_store, clock, Segment.ACTIVE_TRIAL, "coach_grade_ready")

    assert await processor.process_job(job) is JobOutcome.CANCELLED
    assert job.error_message == "opted out"


@pytest.mark.asyncio
async def test_non_recoverable_transport_error_fails_job(
    processor, user_store, job_store, transport, make_user, clock
):
    user_store.add(make_user())
    job = await _step_job(job_store, clock, Segment.ACTIVE_TRIAL, "coach_grade_ready")
    transport.sequenced_error = TransportError("Email API returned 422: bad address", 422, recoverable=False)

    assert await processor.process(job) is False

    assert job.status is JobStatus.FAILED
    assert job.error_message == "Email API returned 422: bad address"
    assert job.retry_count == 1
    # No following step after a failure
    assert len(job_store.jobs) == 1


@pytest.mark.asyncio
async def test_recoverable_transport_error_backs_off(
    processor, user_store, job_store, transport, transport_failure, make_user, clock
):
    user_store.add(make_user())
    job = await _step_job(job_store, clock, Segment.ACTIVE_TRIAL, "coach_grade_ready")
    transport.sequenced_error = transport_failure

    assert await processor.process_job(job) is JobOutcome.RETRY_SCHEDULED
    assert job.status is JobStatus.PENDING
    assert job.retry_count == 1
    assert job.scheduled_at == clock.now + timedelta(minutes=15)

    clock.advance(minutes=15)
    assert await processor.process_job(job) is JobOutcome.RETRY_SCHEDULED
    assert job.retry_count == 2
    assert job.scheduled_at == clock.now + timedelta(minutes=30)

    clock.advance(minutes=30)
    assert await processor.process_job(job) is JobOutcome.FAILED
    assert job.status is JobStatus.FAILED
    assert job.retry_count == 3


@pytest.mark.asyncio
async def test_unknown_step_fails(processor, user_store, job_store, make_user, clock):
    user_store.add(make_user())
    job = await _step_job(job_store, clock, Segment.ACTIVE_TRIAL, "retired_step")

    assert await processor.process_job(job) is JobOutcome.FAILED
    assert job.error_message == "step definition not found"
    assert job.retry_count == 0


@pytest.mark.asyncio
async def test_following_step_error_does_not_change_outcome(
    processor, user_store, job_store, make_user, clock, monkeypatch
):
    user_store.add(make_user())
    job = await _step_job(job_store, clock, Segment.ACTIVE_TRIAL, "coach_grade_ready")

    async def broken(*args, **kwargs):
        raise RuntimeError("database down")

    monkeypatch.setattr(processor.scheduler, "schedule_following_step", broken)

    assert await processor.process(job) is True
    assert job.status is JobStatus.SENT


@pytest.mark.asyncio
async def test_job_cancelled_mid_flight_stays_cancelled(
    processor, user_store, job_store, transport, make_user, clock
):
    user_store.add(make_user())
    job = await _step_job(job_store, clock, Segment.ACTIVE_TRIAL, "coach_grade_ready")

    async def cancel_during_send(user, step, rendered):
        await job_store.mark_cancelled(job.id, "account deleted")

    transport.send_sequenced_message = cancel_during_send

    await processor.process(job)

    assert job.status is JobStatus.CANCELLED
    assert await job_store.mark_sent(job.id) is False
    assert await job_store.mark_failed(job.id, "late", 1) is False


@pytest.mark.asyncio
async def test_final_step_completes_campaign(processor, user_store, job_store, make_user, clock):
    user_store.add(make_user(subscription_status="canceled"))
    job = await _step_job(job_store, clock, Segment.LAPSED, "week_plan_ready")

    assert await processor.process(job) is True
    assert job_store.for_user("user-1", JobStatus.PENDING) == []

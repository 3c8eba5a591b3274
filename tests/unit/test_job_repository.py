from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from drip_engine.features.lifecycle_campaigns.domain import JobStatus, Segment
from drip_engine.features.lifecycle_campaigns.repository import job_repository as repo_module
from drip_engine.features.lifecycle_campaigns.repository.job_repository import (
    JobRepositoryError,
    PostgresJobRepository,
)
from drip_engine.features.lifecycle_campaigns.repository.user_repository import (
    PostgresUserRepository,
    UserRepositoryError,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def _row(**overrides):
    row = {
        "id": "7d1c",
        "user_id": "user-1",
        "kind": "step",
        "segment": "active_trial",
        "step_label": "coach_grade_ready",
        "status": "pending",
        "scheduled_at": NOW,
        "dedupe_key": "user-1:active_trial:coach_grade_ready",
        "retry_count": 0,
        "metadata": {"ordinal": 1},
        "sent_at": None,
        "error_message": None,
        "created_at": NOW,
        "locked_until": None,
    }
    row.update(overrides)
    return row


async def _create(repo):
    return await repo.create_job(
        user_id="user-1",
        kind="step",
        segment=Segment.ACTIVE_TRIAL,
        step_label="coach_grade_ready",
        scheduled_at=NOW,
        dedupe_key="user-1:active_trial:coach_grade_ready",
        metadata={"ordinal": 1},
    )


@pytest.mark.asyncio
async def test_create_job_inserts_with_conflict_guard(monkeypatch):
    fetch_one_mock = AsyncMock(return_value=_row())
    monkeypatch.setattr(repo_module, "fetch_one", fetch_one_mock)

    job = await _create(PostgresJobRepository())

    query, params = fetch_one_mock.await_args.args
    assert "ON CONFLICT (dedupe_key) DO NOTHING" in query
    assert params[2] == "active_trial"
    assert params[-1] == '{"ordinal": 1}'
    assert job.segment is Segment.ACTIVE_TRIAL
    assert job.status is JobStatus.PENDING


@pytest.mark.asyncio
async def test_create_job_returns_existing_row_on_conflict(monkeypatch):
    existing = _row(status="sent", metadata='{"ordinal": 1}')
    fetch_one_mock = AsyncMock(side_effect=[None, existing])
    monkeypatch.setattr(repo_module, "fetch_one", fetch_one_mock)

    job = await _create(PostgresJobRepository())

    assert fetch_one_mock.await_count == 2
    assert job.status is JobStatus.SENT
    assert job.metadata == {"ordinal": 1}


@pytest.mark.asyncio
async def test_create_job_conflict_without_row_raises(monkeypatch):
    monkeypatch.setattr(repo_module, "fetch_one", AsyncMock(return_value=None))

    with pytest.raises(JobRepositoryError):
        await _create(PostgresJobRepository())


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("method", "args"),
    [
        ("mark_sent", ("7d1c",)),
        ("mark_cancelled", ("7d1c", "opted out")),
        ("mark_failed", ("7d1c", "boom", 1)),
        ("reschedule", ("7d1c", NOW)),
        ("schedule_retry", ("7d1c", "boom", 1, NOW)),
    ],
)
async def test_transitions_only_touch_pending_rows(monkeypatch, method, args):
    execute_mock = AsyncMock(return_value=0)
    monkeypatch.setattr(repo_module, "execute_query", execute_mock)

    changed = await getattr(PostgresJobRepository(), method)(*args)

    query = execute_mock.await_args.args[0]
    assert "status = 'pending'" in query
    assert changed is False


@pytest.mark.asyncio
async def test_mark_failed_truncates_error(monkeypatch):
    execute_mock = AsyncMock(return_value=1)
    monkeypatch.setattr(repo_module, "execute_query", execute_mock)

    await PostgresJobRepository().mark_failed("7d1c", "x" * 2000, 2)

    params = execute_mock.await_args.args[1]
    assert len(params[0]) == repo_module.MAX_ERROR_LENGTH
    assert params[1] == 2


@pytest.mark.asyncio
async def test_claim_due_jobs_locks_and_leases(monkeypatch):
    later = _row(id="b", scheduled_at=NOW)
    earlier = _row(id="a", scheduled_at=NOW - timedelta(hours=1))
    fetch_all_mock = AsyncMock(return_value=[later, earlier])
    monkeypatch.setattr(repo_module, "fetch_all", fetch_all_mock)

    jobs = await PostgresJobRepository().claim_due_jobs(10, 600, now=NOW)

    query, params = fetch_all_mock.await_args.args
    assert "FOR UPDATE SKIP LOCKED" in query
    assert params == (NOW, NOW, 10, NOW + timedelta(seconds=600))
    assert [job.id for job in jobs] == ["a", "b"]


@pytest.mark.asyncio
async def test_cancel_pending_jobs_filters_by_kind(monkeypatch):
    execute_mock = AsyncMock(return_value=2)
    monkeypatch.setattr(repo_module, "execute_query", execute_mock)

    cancelled = await PostgresJobRepository().cancel_pending_jobs_for_user("user-1", "now paid", kind="step")

    assert cancelled == 2
    assert execute_mock.await_args.args[1] == ("now paid", "user-1", "step", "step")


@pytest.mark.asyncio
async def test_last_sent_timestamp(monkeypatch):
    monkeypatch.setattr(repo_module, "fetch_one", AsyncMock(return_value={"last_sent_at": NOW}))

    assert await PostgresJobRepository().get_last_sent_timestamp_for_user("user-1") == NOW


@pytest.mark.asyncio
async def test_update_user_rejects_unknown_fields():
    with pytest.raises(UserRepositoryError) as exc_info:
        await PostgresUserRepository().update_user("user-1", {"email": "new@example.com"})

    assert exc_info.value.recoverable is False


@pytest.mark.asyncio
async def test_update_user_builds_whitelisted_assignments(monkeypatch):
    from drip_engine.features.lifecycle_campaigns.repository import user_repository as user_module

    execute_mock = AsyncMock(return_value=1)
    monkeypatch.setattr(user_module, "execute_query", execute_mock)

    updated = await PostgresUserRepository().update_user(
        "user-1", {"subscription_tier": "paid", "integration_connected": True}
    )

    query, params = execute_mock.await_args.args
    assert "integration_connected = %s, subscription_tier = %s" in query
    assert params == (True, "paid", "user-1")
    assert updated is True

"""
Persistence layer for campaign jobs (email_jobs table).

Every status transition is guarded by ``status = 'pending'`` so a job
leaves the pending state exactly once and terminal rows stay untouched.
"""

import json
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from drip_engine.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from drip_engine.features.lifecycle_campaigns.domain import CampaignJob, JobStatus, Segment
from drip_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 500


class JobRepositoryError(DatabaseError):
    """More specific exception for job repository failures."""


class JobStore(Protocol):
    """Narrow interface the scheduler, processor and worker depend on."""

    async def create_job(
        self,
        *,
        user_id: str,
        kind: str,
        segment: Segment | None,
        step_label: str | None,
        scheduled_at: datetime,
        dedupe_key: str,
        metadata: dict[str, Any] | None = None,
        retry_count: int = 0,
    ) -> CampaignJob: ...

    async def get_job(self, job_id: str) -> CampaignJob | None: ...

    async def get_job_by_dedupe_key(self, dedupe_key: str) -> CampaignJob | None: ...

    async def mark_sent(self, job_id: str, sent_at: datetime | None = None) -> bool: ...

    async def mark_cancelled(self, job_id: str, reason: str) -> bool: ...

    async def mark_failed(self, job_id: str, error: str, retry_count: int) -> bool: ...

    async def reschedule(self, job_id: str, scheduled_at: datetime) -> bool: ...

    async def schedule_retry(
        self, job_id: str, error: str, retry_count: int, scheduled_at: datetime
    ) -> bool: ...

    async def list_due_jobs(self, limit: int, now: datetime | None = None) -> list[CampaignJob]: ...

    async def claim_due_jobs(
        self, limit: int, lease_seconds: int, now: datetime | None = None
    ) -> list[CampaignJob]: ...

    async def cancel_pending_jobs_for_user(
        self, user_id: str, reason: str, kind: str | None = None
    ) -> int: ...

    async def get_last_sent_timestamp_for_user(self, user_id: str) -> datetime | None: ...

    async def list_jobs_for_user(self, user_id: str) -> list[CampaignJob]: ...


class PostgresJobRepository:
    """JobStore backed by the email_jobs table."""

    JOB_SELECT_COLUMNS = """
        id, user_id, kind, segment, step_label, status, scheduled_at,
        dedupe_key, retry_count, metadata, sent_at, error_message,
        created_at, locked_until
    """

    @staticmethod
    def _row_to_job(row: dict | None) -> CampaignJob | None:
        if not row:
            return None

        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)

        return CampaignJob(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            kind=row["kind"],
            segment=Segment(row["segment"]) if row.get("segment") else None,
            step_label=row.get("step_label"),
            scheduled_at=row["scheduled_at"],
            dedupe_key=row["dedupe_key"],
            status=JobStatus(row["status"]),
            retry_count=row.get("retry_count") or 0,
            metadata=metadata,
            sent_at=row.get("sent_at"),
            error_message=row.get("error_message"),
            created_at=row.get("created_at"),
            locked_until=row.get("locked_until"),
        )

    @with_db_retry()
    async def create_job(
        self,
        *,
        user_id: str,
        kind: str,
        segment: Segment | None,
        step_label: str | None,
        scheduled_at: datetime,
        dedupe_key: str,
        metadata: dict[str, Any] | None = None,
        retry_count: int = 0,
    ) -> CampaignJob:
        """
        Insert a pending job, or return the existing row for the dedupe key.
        """
        insert_query = f"""
            INSERT INTO email_jobs (
                user_id, kind, segment, step_label, status,
                scheduled_at, dedupe_key, retry_count, metadata
            )
            VALUES (%s, %s, %s, %s, 'pending', %s, %s, %s, %s::jsonb)
            ON CONFLICT (dedupe_key) DO NOTHING
            RETURNING {self.JOB_SELECT_COLUMNS}
        """

        row = await fetch_one(
            insert_query,
            (
                user_id,
                kind,
                segment.value if segment else None,
                step_label,
                scheduled_at,
                dedupe_key,
                retry_count,
                json.dumps(metadata or {}),
            ),
        )

        if row:
            job = self._row_to_job(row)
            logger.info(
                "Campaign job created",
                job_id=job.id,
                user_id=user_id,
                kind=kind,
                segment=job.segment.value if job.segment else None,
                step=step_label,
                scheduled_at=scheduled_at.isoformat(),
            )
            return job

        existing = await self.get_job_by_dedupe_key(dedupe_key)
        if existing is None:
            raise JobRepositoryError(
                f"Job insert for {dedupe_key} conflicted but no row was found",
                operation="create_job",
                recoverable=False,
            )

        logger.debug("Campaign job already exists", dedupe_key=dedupe_key, job_id=existing.id)
        return existing

    async def get_job(self, job_id: str) -> CampaignJob | None:
        query = f"SELECT {self.JOB_SELECT_COLUMNS} FROM email_jobs WHERE id = %s"
        return self._row_to_job(await fetch_one(query, (job_id,)))

    async def get_job_by_dedupe_key(self, dedupe_key: str) -> CampaignJob | None:
        query = f"SELECT {self.JOB_SELECT_COLUMNS} FROM email_jobs WHERE dedupe_key = %s"
        return self._row_to_job(await fetch_one(query, (dedupe_key,)))

    async def mark_sent(self, job_id: str, sent_at: datetime | None = None) -> bool:
        query = """
            UPDATE email_jobs
            SET status = 'sent',
                sent_at = %s,
                error_message = NULL,
                locked_until = NULL,
                updated_at = NOW()
            WHERE id = %s AND status = 'pending'
        """

        updated = await execute_query(query, (sent_at or datetime.now(UTC), job_id))
        return updated > 0

    async def mark_cancelled(self, job_id: str, reason: str) -> bool:
        query = """
            UPDATE email_jobs
            SET status = 'cancelled',
                error_message = %s,
                locked_until = NULL,
                updated_at = NOW()
            WHERE id = %s AND status = 'pending'
        """

        updated = await execute_query(query, (reason[:MAX_ERROR_LENGTH], job_id))
        return updated > 0

    async def mark_failed(self, job_id: str, error: str, retry_count: int) -> bool:
        truncated_error = (error or "")[:MAX_ERROR_LENGTH]
        query = """
            UPDATE email_jobs
            SET status = 'failed',
                error_message = %s,
                retry_count = %s,
                locked_until = NULL,
                updated_at = NOW()
            WHERE id = %s AND status = 'pending'
        """

        updated = await execute_query(query, (truncated_error, retry_count, job_id))
        if updated:
            logger.warning("Campaign job failed", job_id=job_id, error=truncated_error)
        return updated > 0

    async def reschedule(self, job_id: str, scheduled_at: datetime) -> bool:
        query = """
            UPDATE email_jobs
            SET scheduled_at = %s,
                locked_until = NULL,
                updated_at = NOW()
            WHERE id = %s AND status = 'pending'
        """

        updated = await execute_query(query, (scheduled_at, job_id))
        return updated > 0

    async def schedule_retry(
        self, job_id: str, error: str, retry_count: int, scheduled_at: datetime
    ) -> bool:
        """Keep the job pending for another attempt, recording the failure."""
        query = """
            UPDATE email_jobs
            SET scheduled_at = %s,
                error_message = %s,
                retry_count = %s,
                locked_until = NULL,
                updated_at = NOW()
            WHERE id = %s AND status = 'pending'
        """

        updated = await execute_query(
            query, (scheduled_at, (error or "")[:MAX_ERROR_LENGTH], retry_count, job_id)
        )
        return updated > 0

    async def list_due_jobs(self, limit: int, now: datetime | None = None) -> list[CampaignJob]:
        query = f"""
            SELECT {self.JOB_SELECT_COLUMNS}
            FROM email_jobs
            WHERE status = 'pending'
              AND scheduled_at <= %s
              AND (locked_until IS NULL OR locked_until < %s)
            ORDER BY scheduled_at ASC
            LIMIT %s
        """

        now = now or datetime.now(UTC)
        rows = await fetch_all(query, (now, now, limit))
        return [self._row_to_job(row) for row in rows]

    @with_db_retry()
    async def claim_due_jobs(
        self, limit: int, lease_seconds: int, now: datetime | None = None
    ) -> list[CampaignJob]:
        """
        Atomically lease up to ``limit`` due jobs.

        Rows locked by another worker's claim are skipped, and a claimed row
        is invisible to other claimers until its lease expires.
        """
        now = now or datetime.now(UTC)
        lease_until = now + timedelta(seconds=lease_seconds)

        query = """
            WITH due AS (
                SELECT id
                FROM email_jobs
                WHERE status = 'pending'
                  AND scheduled_at <= %s
                  AND (locked_until IS NULL OR locked_until < %s)
                ORDER BY scheduled_at ASC
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            UPDATE email_jobs j
            SET locked_until = %s,
                updated_at = NOW()
            FROM due
            WHERE j.id = due.id
            RETURNING j.*
        """

        rows = await fetch_all(query, (now, now, limit, lease_until))
        jobs = [self._row_to_job(row) for row in rows]
        # UPDATE ... RETURNING does not preserve the CTE order
        jobs.sort(key=lambda job: job.scheduled_at)
        return jobs

    async def cancel_pending_jobs_for_user(
        self, user_id: str, reason: str, kind: str | None = None
    ) -> int:
        query = """
            UPDATE email_jobs
            SET status = 'cancelled',
                error_message = %s,
                locked_until = NULL,
                updated_at = NOW()
            WHERE user_id = %s
              AND status = 'pending'
              AND (%s::text IS NULL OR kind = %s::text)
        """

        cancelled = await execute_query(query, (reason[:MAX_ERROR_LENGTH], user_id, kind, kind))
        if cancelled:
            logger.info("Pending campaign jobs cancelled", user_id=user_id, count=cancelled, reason=reason)
        return cancelled

    async def get_last_sent_timestamp_for_user(self, user_id: str) -> datetime | None:
        query = """
            SELECT MAX(sent_at) AS last_sent_at
            FROM email_jobs
            WHERE user_id = %s AND status = 'sent' AND kind = 'step'
        """

        row = await fetch_one(query, (user_id,))
        return row["last_sent_at"] if row else None

    async def list_jobs_for_user(self, user_id: str) -> list[CampaignJob]:
        query = f"""
            SELECT {self.JOB_SELECT_COLUMNS}
            FROM email_jobs
            WHERE user_id = %s
            ORDER BY created_at ASC
        """

        rows = await fetch_all(query, (user_id,))
        return [self._row_to_job(row) for row in rows]


job_repository = PostgresJobRepository()

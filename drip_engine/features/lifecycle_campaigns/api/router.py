"""
Operator routes for drip campaigns.

Everything here sits behind the admin bearer token: worker status and
manual cycles, the persisted enable switch, manual retry of failed jobs,
per-user job history and on-demand outbox delivery.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from drip_engine.auth.verify import admin_dependency
from drip_engine.features.lifecycle_campaigns.jobs.campaign_worker import (
    CampaignWorker,
    CampaignWorkerError,
    get_campaign_worker,
)
from drip_engine.features.lifecycle_campaigns.services.outbox_processor import OutboxProcessor
from drip_engine.features.lifecycle_campaigns.services.scheduler import (
    CampaignScheduler,
    campaign_scheduler,
)
from drip_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(
    prefix="/admin/drip",
    tags=["admin-drip"],
    dependencies=[Depends(admin_dependency)],
)


class EnabledRequest(BaseModel):
    enabled: bool


class BackfillRequest(BaseModel):
    user_ids: list[str] = Field(min_length=1, max_length=1000)


def get_scheduler() -> CampaignScheduler:
    return campaign_scheduler


def get_outbox_processor() -> OutboxProcessor:
    return OutboxProcessor()


@router.get("/status")
async def get_drip_status(worker: CampaignWorker = Depends(get_campaign_worker)) -> dict:
    return {**worker.get_status(), "health": worker.health_check()}


@router.post("/run")
async def run_drip_cycle(worker: CampaignWorker = Depends(get_campaign_worker)) -> dict:
    """Run one worker cycle now. Disabled or busy workers report a skip."""
    return await worker.run_now()


@router.post("/enabled")
async def set_drip_enabled(
    request: EnabledRequest, worker: CampaignWorker = Depends(get_campaign_worker)
) -> dict:
    try:
        await worker.set_enabled(request.enabled)
    except CampaignWorkerError as e:
        logger.error("Failed to change campaigns enabled switch", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not persist the campaigns enabled setting",
        ) from e

    return {"campaigns_enabled": worker.campaigns_enabled}


@router.post("/jobs/{job_id}/retry")
async def retry_drip_job(
    job_id: str, scheduler: CampaignScheduler = Depends(get_scheduler)
) -> dict:
    existing = await scheduler.jobs.get_job(job_id)
    if existing is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    retry = await scheduler.retry_failed_job(job_id)
    if retry is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Job is not failed or has reached the retry limit",
        )

    return {"retry_job": retry.to_dict()}


@router.get("/users/{user_id}/jobs")
async def list_user_jobs(
    user_id: str, scheduler: CampaignScheduler = Depends(get_scheduler)
) -> dict:
    jobs = await scheduler.jobs.list_jobs_for_user(user_id)
    return {"user_id": user_id, "jobs": [job.to_dict() for job in jobs]}


@router.post("/users/backfill")
async def backfill_users(
    request: BackfillRequest, scheduler: CampaignScheduler = Depends(get_scheduler)
) -> dict:
    return await scheduler.backfill(request.user_ids)


@router.post("/notifications/process")
async def process_notifications(
    limit: int = 50, processor: OutboxProcessor = Depends(get_outbox_processor)
) -> dict:
    result = await processor.process_pending(limit)
    return result.to_dict()

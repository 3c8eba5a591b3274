"""
Job runners for the lifecycle campaigns feature.
"""

from .campaign_worker import CampaignWorker, get_campaign_worker, start_drip_campaign_scheduler
from .outbox_job import run_notification_outbox_job, start_notification_outbox_scheduler

__all__ = [
    "CampaignWorker",
    "get_campaign_worker",
    "start_drip_campaign_scheduler",
    "run_notification_outbox_job",
    "start_notification_outbox_scheduler",
]

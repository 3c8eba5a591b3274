"""
Domain subpackage for lifecycle campaigns.
"""

from .models import (
    ACTIVITY_READY_JOB_KIND,
    STEP_JOB_KIND,
    CampaignJob,
    Channel,
    JobOutcome,
    JobStatus,
    NotificationStatus,
    OutboxNotification,
    RenderedMessage,
    Segment,
    StepDefinition,
)

__all__ = [
    "ACTIVITY_READY_JOB_KIND",
    "STEP_JOB_KIND",
    "CampaignJob",
    "Channel",
    "JobOutcome",
    "JobStatus",
    "NotificationStatus",
    "OutboxNotification",
    "RenderedMessage",
    "Segment",
    "StepDefinition",
]

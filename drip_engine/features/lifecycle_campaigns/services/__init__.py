"""
Service layer for lifecycle campaigns.
"""

from .outbox_processor import OutboxProcessor, OutboxResult
from .processor import CampaignProcessor
from .scheduler import CampaignScheduler, campaign_scheduler
from .segment_classifier import classify

__all__ = [
    "CampaignProcessor",
    "CampaignScheduler",
    "campaign_scheduler",
    "classify",
    "OutboxProcessor",
    "OutboxResult",
]

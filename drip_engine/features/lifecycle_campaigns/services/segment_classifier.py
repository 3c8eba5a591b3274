"""
Segment classification for lifecycle campaigns.

Pure function of a user snapshot and a reference time. It is evaluated
when a job is enqueued and again right before the job is dispatched.
"""

from datetime import UTC, datetime, timedelta

from drip_engine.config import settings
from drip_engine.features.lifecycle_campaigns.domain.models import Segment
from drip_engine.models.domain.user_domain import CampaignUser

LAPSED_SUBSCRIPTION_STATUSES = frozenset({"canceled", "past_due", "unpaid"})


def classify(
    user: CampaignUser,
    now: datetime | None = None,
    *,
    lapsed_after_days: int | None = None,
) -> Segment | None:
    """
    Map a user snapshot to a segment, or None when no campaign applies.

    First match wins:
        opted out -> None
        integration not connected -> not_integrated
        active paid subscription -> None
        inactive for too long or billing lapsed -> lapsed
        trialing -> active_trial
        anything else -> lapsed
    """
    if user.marketing_opt_out:
        return None

    if not user.integration_connected:
        return Segment.NOT_INTEGRATED

    if user.is_paid:
        return None

    now = now or datetime.now(UTC)
    days = settings.LAPSED_AFTER_DAYS if lapsed_after_days is None else lapsed_after_days
    inactive = user.last_seen_at is not None and user.last_seen_at < now - timedelta(days=days)

    if inactive or user.subscription_status in LAPSED_SUBSCRIPTION_STATUSES:
        return Segment.LAPSED

    if user.subscription_status == "trialing":
        return Segment.ACTIVE_TRIAL

    # Connected the integration but never started a trial
    return Segment.LAPSED

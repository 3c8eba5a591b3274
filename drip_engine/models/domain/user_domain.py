from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict

SubscriptionStatus = Literal["trialing", "active", "past_due", "canceled", "unpaid", "none"]
SubscriptionTier = Literal["free", "paid"]


class CampaignUser(BaseModel):
    """User snapshot as seen by the lifecycle campaigns (read-only here)."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    user_id: str
    email: str | None = None
    display_name: str | None = None

    integration_connected: bool = False
    subscription_status: SubscriptionStatus = "none"
    subscription_tier: SubscriptionTier = "free"
    last_seen_at: datetime | None = None
    marketing_opt_out: bool = False

    @property
    def is_paid(self) -> bool:
        return self.subscription_status == "active" and self.subscription_tier == "paid"

    @property
    def greeting_name(self) -> str:
        if self.display_name:
            return self.display_name
        if self.email:
            return self.email.split("@")[0]
        return "Runner"

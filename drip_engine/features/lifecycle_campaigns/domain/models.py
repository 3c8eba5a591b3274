"""
Domain models for the lifecycle campaigns feature.

Lightweight dataclasses and enums shared by the repositories, the
scheduler/processor services, the worker and the admin API.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Segment(str, Enum):
    NOT_INTEGRATED = "not_integrated"
    ACTIVE_TRIAL = "active_trial"
    LAPSED = "lapsed"


class JobStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    CANCELLED = "cancelled"
    FAILED = "failed"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Channel(str, Enum):
    EMAIL = "email"
    IN_APP = "in_app"


class JobOutcome(str, Enum):
    """What happened to a job during one dispatch attempt."""

    SENT = "sent"
    CANCELLED = "cancelled"
    DEFERRED = "deferred"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


# Sequenced campaign job. Every other kind is a one-shot job.
STEP_JOB_KIND = "step"
ACTIVITY_READY_JOB_KIND = "activity_ready"


@dataclass(frozen=True, slots=True)
class StepDefinition:
    """One message in a segment's ordered sequence."""

    segment: Segment
    ordinal: int
    label: str
    delay_hours: float  # from the previous step, or from the trigger for ordinal 1
    template_id: str
    params: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class CampaignJob:
    """Represents an email_jobs row."""

    id: str
    user_id: str
    kind: str
    segment: Segment | None
    step_label: str | None
    scheduled_at: datetime
    dedupe_key: str
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    sent_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    locked_until: datetime | None = None

    @property
    def is_step(self) -> bool:
        return self.kind == STEP_JOB_KIND

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "kind": self.kind,
            "segment": self.segment.value if self.segment else None,
            "step_label": self.step_label,
            "scheduled_at": self.scheduled_at.isoformat(),
            "dedupe_key": self.dedupe_key,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "metadata": self.metadata,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(slots=True)
class OutboxNotification:
    """Represents a notification_outbox row (one-shot, not sequenced)."""

    id: str
    user_id: str
    type: str
    channel: str
    title: str
    body: str
    dedupe_key: str
    data: dict[str, Any] = field(default_factory=dict)
    status: NotificationStatus = NotificationStatus.PENDING
    status_reason: str | None = None
    created_at: datetime | None = None
    sent_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class RenderedMessage:
    """Rendered email ready for the transport."""

    subject: str
    html: str
    text: str
    preview_text: str | None = None

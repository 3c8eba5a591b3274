"""
Persistence for one-shot notifications (notification_outbox table).
"""

import json
from datetime import UTC, datetime
from typing import Any, Protocol

from drip_engine.db.helpers import execute_query, fetch_all, fetch_one
from drip_engine.features.lifecycle_campaigns.domain import NotificationStatus, OutboxNotification
from drip_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class OutboxStore(Protocol):
    async def enqueue(
        self,
        *,
        user_id: str,
        type: str,
        channel: str,
        title: str,
        body: str,
        dedupe_key: str,
        data: dict[str, Any] | None = None,
    ) -> OutboxNotification: ...

    async def list_pending(self, limit: int) -> list[OutboxNotification]: ...

    async def mark_sent(self, notification_id: str) -> bool: ...

    async def mark_failed(self, notification_id: str, reason: str) -> bool: ...


class PostgresOutboxRepository:
    """OutboxStore backed by the notification_outbox table."""

    SELECT_COLUMNS = """
        id, user_id, type, channel, title, body, data, dedupe_key,
        status, status_reason, created_at, sent_at
    """

    @staticmethod
    def _row_to_notification(row: dict | None) -> OutboxNotification | None:
        if not row:
            return None

        data = row.get("data") or {}
        if isinstance(data, str):
            data = json.loads(data)

        return OutboxNotification(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            type=row["type"],
            channel=row["channel"],
            title=row["title"],
            body=row["body"],
            dedupe_key=row["dedupe_key"],
            data=data,
            status=NotificationStatus(row["status"]),
            status_reason=row.get("status_reason"),
            created_at=row.get("created_at"),
            sent_at=row.get("sent_at"),
        )

    async def enqueue(
        self,
        *,
        user_id: str,
        type: str,
        channel: str,
        title: str,
        body: str,
        dedupe_key: str,
        data: dict[str, Any] | None = None,
    ) -> OutboxNotification:
        """Insert a pending notification, or return the existing one for the key."""
        query = f"""
            INSERT INTO notification_outbox (
                user_id, type, channel, title, body, data, dedupe_key, status
            )
            VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, 'pending')
            ON CONFLICT (dedupe_key) DO NOTHING
            RETURNING {self.SELECT_COLUMNS}
        """

        row = await fetch_one(
            query, (user_id, type, channel, title, body, json.dumps(data or {}), dedupe_key)
        )
        if row:
            logger.info("Notification enqueued", user_id=user_id, type=type, channel=channel)
            return self._row_to_notification(row)

        existing = await fetch_one(
            f"SELECT {self.SELECT_COLUMNS} FROM notification_outbox WHERE dedupe_key = %s",
            (dedupe_key,),
        )
        return self._row_to_notification(existing)

    async def list_pending(self, limit: int) -> list[OutboxNotification]:
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM notification_outbox
            WHERE status = 'pending'
            ORDER BY created_at ASC
            LIMIT %s
        """

        rows = await fetch_all(query, (limit,))
        return [self._row_to_notification(row) for row in rows]

    async def mark_sent(self, notification_id: str) -> bool:
        query = """
            UPDATE notification_outbox
            SET status = 'sent', sent_at = %s, status_reason = NULL
            WHERE id = %s AND status = 'pending'
        """
        return await execute_query(query, (datetime.now(UTC), notification_id)) > 0

    async def mark_failed(self, notification_id: str, reason: str) -> bool:
        query = """
            UPDATE notification_outbox
            SET status = 'failed', status_reason = %s
            WHERE id = %s AND status = 'pending'
        """
        return await execute_query(query, ((reason or "")[:500], notification_id)) > 0


outbox_repository = PostgresOutboxRepository()

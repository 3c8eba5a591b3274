"""
Read access to the users table for campaign classification.

The account service owns these rows. Only the business-event handlers
write through ``update_user`` and only for the campaign-relevant fields.
"""

from typing import Any, Protocol

from drip_engine.db.helpers import DatabaseError, execute_query, fetch_one
from drip_engine.infrastructure.observability.logging import get_logger
from drip_engine.models.domain.user_domain import CampaignUser

logger = get_logger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "integration_connected",
        "subscription_status",
        "subscription_tier",
        "last_seen_at",
        "marketing_opt_out",
    }
)


class UserRepositoryError(DatabaseError):
    """Raised for invalid user updates."""


class UserStore(Protocol):
    async def get_user(self, user_id: str) -> CampaignUser | None: ...

    async def update_user(self, user_id: str, fields: dict[str, Any]) -> bool: ...


class PostgresUserRepository:
    """UserStore backed by the users table."""

    USER_SELECT_COLUMNS = """
        id, email, display_name, integration_connected, subscription_status,
        subscription_tier, last_seen_at, marketing_opt_out
    """

    async def get_user(self, user_id: str) -> CampaignUser | None:
        query = f"SELECT {self.USER_SELECT_COLUMNS} FROM users WHERE id = %s"
        row = await fetch_one(query, (user_id,))
        if not row:
            return None

        return CampaignUser(
            user_id=str(row["id"]),
            email=row.get("email"),
            display_name=row.get("display_name"),
            integration_connected=bool(row.get("integration_connected")),
            subscription_status=row.get("subscription_status") or "none",
            subscription_tier=row.get("subscription_tier") or "free",
            last_seen_at=row.get("last_seen_at"),
            marketing_opt_out=bool(row.get("marketing_opt_out")),
        )

    async def update_user(self, user_id: str, fields: dict[str, Any]) -> bool:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise UserRepositoryError(
                f"Cannot update user fields: {sorted(unknown)}",
                operation="update_user",
                recoverable=False,
            )
        if not fields:
            return False

        # Column names come from the whitelist above, values are parameterized
        columns = sorted(fields)
        assignments = ", ".join(f"{column} = %s" for column in columns)
        query = f"UPDATE users SET {assignments}, updated_at = NOW() WHERE id = %s"
        params = tuple(fields[column] for column in columns) + (user_id,)

        updated = await execute_query(query, params)
        logger.debug("User campaign fields updated", user_id=user_id, fields=columns)
        return updated > 0


user_repository = PostgresUserRepository()

"""
Persisted key/value system settings (operator switches that survive restarts).
"""

from typing import Protocol

from drip_engine.db.helpers import execute_query, fetch_val

DRIP_CAMPAIGNS_ENABLED_KEY = "drip_campaigns_enabled"


class SettingsStore(Protocol):
    async def get_setting(self, key: str) -> str | None: ...

    async def set_setting(self, key: str, value: str) -> None: ...


class PostgresSettingsRepository:
    """SettingsStore backed by the system_settings table."""

    async def get_setting(self, key: str) -> str | None:
        return await fetch_val("SELECT value FROM system_settings WHERE key = %s", (key,))

    async def set_setting(self, key: str, value: str) -> None:
        query = """
            INSERT INTO system_settings (key, value, updated_at)
            VALUES (%s, %s, NOW())
            ON CONFLICT (key)
            DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
        """
        await execute_query(query, (key, value))


settings_repository = PostgresSettingsRepository()

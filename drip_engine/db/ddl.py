"""Database schema DDL for lifecycle campaigns."""

from drip_engine.db.pool import db_pool
from drip_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

EMAIL_JOBS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS email_jobs (
  id             UUID PRIMARY KEY DEFAULT gen_random_uuid(),
  user_id        TEXT NOT NULL,
  kind           TEXT NOT NULL,
  segment        TEXT,
  step_label     TEXT,

  status         TEXT NOT NULL DEFAULT 'pending'
                 CHECK (status IN ('pending', 'sent', 'cancelled', 'failed')),
  scheduled_at   TIMESTAMPTZ NOT NULL,
  dedupe_key     TEXT NOT NULL,

  retry_count    INT NOT NULL DEFAULT 0,
  metadata       JSONB NOT NULL DEFAULT '{}'::jsonb,
  error_message  TEXT,
  sent_at        TIMESTAMPTZ,
  locked_until   TIMESTAMPTZ,

  created_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at     TIMESTAMPTZ NOT NULL DEFAULT now(),

  CONSTRAINT uq_email_jobs_dedupe_key UNIQUE (dedupe_key)
);

CREATE INDEX IF NOT EXISTS idx_email_jobs_due
ON email_jobs (scheduled_at)
WHERE status = 'pending';

CREATE INDEX IF NOT EXISTS idx_email_jobs_user_status
ON email_jobs (user_id, status);

-- Frequency cap lookup: latest sequenced send per user
CREATE INDEX IF NOT EXISTS idx_email_jobs_user_sent
ON email_jobs (user_id, sent_at DESC)
WHERE status = 'sent' AND kind = 'step';
"""

NOTIFICATION_OUTBOX_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS notification_outbox (
  id             UUID PRIMARY KEY DEFAULT gen_random_uuid(),
  user_id        TEXT NOT NULL,
  type           TEXT NOT NULL,
  channel        TEXT NOT NULL,
  title          TEXT NOT NULL,
  body           TEXT NOT NULL,
  data           JSONB NOT NULL DEFAULT '{}'::jsonb,
  dedupe_key     TEXT NOT NULL,

  status         TEXT NOT NULL DEFAULT 'pending'
                 CHECK (status IN ('pending', 'sent', 'failed')),
  status_reason  TEXT,
  sent_at        TIMESTAMPTZ,
  created_at     TIMESTAMPTZ NOT NULL DEFAULT now(),

  CONSTRAINT uq_notification_outbox_dedupe_key UNIQUE (dedupe_key)
);

CREATE INDEX IF NOT EXISTS idx_notification_outbox_pending
ON notification_outbox (created_at)
WHERE status = 'pending';
"""

SYSTEM_SETTINGS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS system_settings (
  key         TEXT PRIMARY KEY,
  value       TEXT NOT NULL,
  updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

# The users table belongs to the account service; these are the columns read here.
USERS_COLUMNS_DDL = """
ALTER TABLE users ADD COLUMN IF NOT EXISTS integration_connected BOOLEAN NOT NULL DEFAULT FALSE;
ALTER TABLE users ADD COLUMN IF NOT EXISTS subscription_status TEXT NOT NULL DEFAULT 'none';
ALTER TABLE users ADD COLUMN IF NOT EXISTS subscription_tier TEXT NOT NULL DEFAULT 'free';
ALTER TABLE users ADD COLUMN IF NOT EXISTS last_seen_at TIMESTAMPTZ;
ALTER TABLE users ADD COLUMN IF NOT EXISTS marketing_opt_out BOOLEAN NOT NULL DEFAULT FALSE;
"""

ALL_DDL = (
    EMAIL_JOBS_TABLE_DDL,
    NOTIFICATION_OUTBOX_TABLE_DDL,
    SYSTEM_SETTINGS_TABLE_DDL,
)


async def apply_schema(include_user_columns: bool = False) -> None:
    """Create campaign tables if they are missing."""
    statements = list(ALL_DDL)
    if include_user_columns:
        statements.append(USERS_COLUMNS_DDL)

    async with db_pool.transaction() as conn:
        for ddl in statements:
            await conn.execute(ddl)

    logger.info("Campaign schema applied", statement_groups=len(statements))

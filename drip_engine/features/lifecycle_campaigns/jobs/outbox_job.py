"""
Notification outbox job.

Delivers pending notification_outbox rows on a fixed interval. Rows are
never chained or rescheduled; each pass leaves them sent or failed.
"""

import asyncio

from drip_engine.config import settings
from drip_engine.features.lifecycle_campaigns.services.outbox_processor import OutboxProcessor
from drip_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


async def run_notification_outbox_job(processor: OutboxProcessor | None = None) -> dict:
    """Run a single outbox pass."""
    processor = processor or OutboxProcessor()
    result = await processor.process_pending(settings.OUTBOX_BATCH_SIZE)
    return result.to_dict()


async def start_notification_outbox_scheduler() -> None:
    """Entry point for running outbox delivery as a standalone process."""
    from drip_engine.db.pool import db_pool

    logger.info(
        "Starting notification outbox scheduler",
        interval_seconds=settings.OUTBOX_INTERVAL_SECONDS,
        batch_size=settings.OUTBOX_BATCH_SIZE,
    )

    await db_pool.initialize()
    processor = OutboxProcessor()

    try:
        while True:
            try:
                metrics = await run_notification_outbox_job(processor)
                if metrics["processed"]:
                    logger.info(
                        "Notification outbox cycle completed",
                        **{k: v for k, v in metrics.items() if k != "errors"},
                    )
            except Exception as e:
                logger.error(
                    "Error in notification outbox scheduler", error=str(e), error_type=type(e).__name__
                )
            await asyncio.sleep(settings.OUTBOX_INTERVAL_SECONDS)
    finally:
        await db_pool.close()


if __name__ == "__main__":
    asyncio.run(start_notification_outbox_scheduler())

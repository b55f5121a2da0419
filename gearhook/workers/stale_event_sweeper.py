"""
Stale event sweeper - recovers webhook events stuck mid-pipeline.
Runs every sweeper_interval_seconds.

- PENDING past pending_redispatch_after_seconds (crash between store and
  dispatch) -> dispatched again; the PENDING claim lets only one dispatch win.
- PROCESSING past processing_timeout_seconds (crash mid-handler) -> FAILED
  with processing_timeout so an operator can replay it.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update

logger = logging.getLogger(__name__)

BATCH_SIZE = 50
PROCESSING_TIMEOUT = "processing_timeout"


async def run_stale_event_sweeper(mailer):
    """Main sweeper loop. Runs continuously."""
    from gearhook.config import get_settings
    from gearhook.utils.redis_client import write_heartbeat

    settings = get_settings()
    logger.info("Stale event sweeper started")

    while True:
        try:
            redispatched, timed_out = await sweep_stale_events(mailer, settings)
            if redispatched or timed_out:
                logger.info(
                    "Stale event sweeper: %d redispatched, %d timed out",
                    redispatched, timed_out,
                )
        except Exception as e:
            logger.error("Stale event sweeper error: %s", str(e), exc_info=True)

        await write_heartbeat("stale_event_sweeper", ttl_seconds=settings.sweeper_interval_seconds * 5)
        await asyncio.sleep(settings.sweeper_interval_seconds)


async def sweep_stale_events(mailer, settings, session_factory=None) -> tuple[int, int]:
    """One sweep pass. Returns (redispatched, timed_out)."""
    from gearhook.database import async_session_factory
    from gearhook.models.webhook_event import WebhookEventLog, WebhookEventStatus
    from gearhook.services.dispatcher import dispatch
    from gearhook.services.event_store import truncate_error

    session_factory = session_factory or async_session_factory
    now = datetime.now(timezone.utc)
    redispatched = 0

    async with session_factory() as db:
        timeout_cutoff = now - timedelta(seconds=settings.processing_timeout_seconds)
        message = truncate_error(
            f"Processing did not finish within {settings.processing_timeout_seconds}s",
            settings.error_message_max_length,
        )
        result = await db.execute(
            update(WebhookEventLog)
            .where(
                WebhookEventLog.status == WebhookEventStatus.PROCESSING.value,
                WebhookEventLog.processing_started_at < timeout_cutoff,
            )
            .values(
                status=WebhookEventStatus.FAILED.value,
                error_code=PROCESSING_TIMEOUT,
                error_message=message,
                processed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        timed_out = result.rowcount or 0
        await db.commit()
        if timed_out:
            logger.warning(
                "Timed out %d events stuck in PROCESSING", timed_out,
                extra={"error_code": PROCESSING_TIMEOUT},
            )

        pending_cutoff = now - timedelta(seconds=settings.pending_redispatch_after_seconds)
        result = await db.execute(
            select(WebhookEventLog.event_id)
            .where(
                WebhookEventLog.status == WebhookEventStatus.PENDING.value,
                WebhookEventLog.received_at < pending_cutoff,
                WebhookEventLog.ignored_at.is_(None),
                WebhookEventLog.signature_valid.is_(True),
            )
            .order_by(WebhookEventLog.received_at)
            .limit(BATCH_SIZE)
        )
        stale_ids = [row[0] for row in result.all()]

        for event_id in stale_ids:
            logger.warning("Re-dispatching stale PENDING event %s", event_id, extra={"event_id": event_id})
            try:
                dispatched = await dispatch(db, event_id, mailer=mailer, settings=settings)
            except Exception as e:
                await db.rollback()
                logger.error(
                    "Re-dispatch of %s failed: %s", event_id, str(e),
                    extra={"event_id": event_id}, exc_info=True,
                )
                continue
            if not dispatched.skipped:
                redispatched += 1

    return redispatched, timed_out

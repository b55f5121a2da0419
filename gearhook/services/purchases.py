"""
Incoming gear - staff mark a purchase's gear as received; the customer is
emailed after a delay unless the action is undone first.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from gearhook.config import Settings
from gearhook.errors import ConcurrencyConflict, PurchaseNotFound, ValidationFailed
from gearhook.models.purchase import PendingPurchase
from gearhook.models.scheduled_job import ScheduledJob
from gearhook.schemas.related_entity import PurchaseRef
from gearhook.services.delayed_jobs import JobContext, cancel_job, job_handler, schedule_job
from gearhook.services.mailer import send_gear_received

logger = logging.getLogger(__name__)

GEAR_RECEIVED_EMAIL = "gear_received_email"


async def get_purchase(db: AsyncSession, purchase_id: str) -> PendingPurchase:
    try:
        key = uuid.UUID(str(purchase_id))
    except ValueError:
        raise PurchaseNotFound(f"Purchase {purchase_id} not found")
    purchase = await db.get(PendingPurchase, key)
    if purchase is None:
        raise PurchaseNotFound(f"Purchase {purchase_id} not found")
    return purchase


async def mark_received(
    db: AsyncSession,
    purchase_id: str,
    actor_id: str,
    settings: Settings,
) -> tuple[PendingPurchase, ScheduledJob]:
    """Record the gear as received and schedule the customer email. Re-marking reschedules."""
    purchase = await get_purchase(db, purchase_id)
    now = datetime.now(timezone.utc)

    purchase.gear_received_at = now
    purchase.gear_received_by_user_id = actor_id
    purchase.client_notified_at = None
    purchase.status = "INSPECTION_IN_PROGRESS"

    job = await schedule_job(
        db,
        GEAR_RECEIVED_EMAIL,
        PurchaseRef(str(purchase.id)),
        run_at=now + timedelta(minutes=settings.gear_received_notify_delay_minutes),
    )
    await db.commit()

    logger.info(
        "Gear received for purchase %s by %s; customer notified at %s unless undone",
        str(purchase.id)[:8], actor_id, job.run_at.isoformat(),
        extra={"actor_id": actor_id, "job_id": str(job.id)},
    )
    return purchase, job


async def undo_received(db: AsyncSession, purchase_id: str, actor_id: str) -> PendingPurchase:
    """Cancel the pending notification and revert the purchase. Refused once the customer was emailed."""
    purchase = await get_purchase(db, purchase_id)
    if purchase.gear_received_at is None:
        raise ValidationFailed("Gear not marked as received yet")
    if purchase.client_notified_at is not None:
        raise ConcurrencyConflict("Cannot undo - client has already been notified")

    if not await cancel_job(db, GEAR_RECEIVED_EMAIL, PurchaseRef(str(purchase.id))):
        await db.rollback()
        raise ConcurrencyConflict("Cannot undo - client notification already in progress")

    purchase.gear_received_at = None
    purchase.gear_received_by_user_id = None
    purchase.status = "AWAITING_DELIVERY"
    await db.commit()

    logger.info(
        "Gear received undone for purchase %s by %s", str(purchase.id)[:8], actor_id,
        extra={"actor_id": actor_id},
    )
    return purchase


@job_handler(GEAR_RECEIVED_EMAIL)
async def send_gear_received_notification(ctx: JobContext, job: ScheduledJob) -> None:
    purchase: Optional[PendingPurchase] = await ctx.db.get(
        PendingPurchase, uuid.UUID(job.entity_id), populate_existing=True,
    )
    if purchase is None:
        logger.warning("Purchase %s gone, skipping gear-received email", job.entity_id[:8])
        return
    if purchase.gear_received_at is None or purchase.client_notified_at is not None:
        return

    if purchase.customer_email:
        result = await send_gear_received(ctx.mailer, purchase.customer_name, purchase.customer_email)
        if result.get("status") == "error":
            raise RuntimeError(f"Email send failed: {result.get('error')}")
    else:
        logger.info("No email for purchase %s, marking notified", str(purchase.id)[:8])

    purchase.client_notified_at = datetime.now(timezone.utc)

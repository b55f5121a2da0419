"""
quote_accepted v1.0 - the bot closed a deal; create a PendingPurchase for
staff review and email the customer their confirmation link.

Critical mutation: the purchase and its items.
Best-effort: the quote-approved email (runs after the event is committed).
"""
import json
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from functools import partial

from sqlalchemy import select

from gearhook.models.purchase import PendingPurchase, PurchaseItem
from gearhook.schemas.related_entity import PurchaseRef, from_columns
from gearhook.schemas.webhook_payloads import QuoteAcceptedPayloadV1
from gearhook.services.handlers import (
    AppliedCheck,
    HandlerContext,
    HandlerOutcome,
    HandlerRegistration,
)
from gearhook.services.mailer import send_quote_approved

logger = logging.getLogger(__name__)

# Same customer + same conversation inside this window counts as the same acceptance
DUPLICATE_ACCEPTANCE_WINDOW = timedelta(days=7)


async def is_quote_accepted_applied(
    ctx: HandlerContext, payload: QuoteAcceptedPayloadV1,
) -> AppliedCheck:
    """
    Applied if any of:
    1. the event already points at a purchase that still exists
    2. a purchase records this event as its source
    3. the same phone + conversation accepted a quote within the last 7 days
    """
    db = ctx.db

    ref = from_columns(ctx.event.related_entity_type, ctx.event.related_entity_id)
    if isinstance(ref, PurchaseRef):
        try:
            existing = await db.get(PendingPurchase, uuid.UUID(ref.purchase_id))
        except ValueError:
            existing = None
        if existing is not None:
            return AppliedCheck(applied=True, related=ref)

    result = await db.execute(
        select(PendingPurchase.id)
        .where(PendingPurchase.source_event_id == ctx.event.event_id)
        .order_by(PendingPurchase.created_at)
        .limit(1)
    )
    purchase_id = result.scalar_one_or_none()
    if purchase_id is not None:
        return AppliedCheck(applied=True, related=PurchaseRef(str(purchase_id)))

    if payload.whatsappConversationId:
        cutoff = datetime.now(timezone.utc) - DUPLICATE_ACCEPTANCE_WINDOW
        result = await db.execute(
            select(PendingPurchase.id)
            .where(
                PendingPurchase.customer_phone == payload.customerPhone,
                PendingPurchase.whatsapp_conversation_id == payload.whatsappConversationId,
                PendingPurchase.bot_quote_accepted_at >= cutoff,
            )
            .order_by(PendingPurchase.created_at.desc())
            .limit(1)
        )
        purchase_id = result.scalar_one_or_none()
        if purchase_id is not None:
            return AppliedCheck(applied=True, related=PurchaseRef(str(purchase_id)))

    return AppliedCheck(applied=False)


async def handle_quote_accepted(
    ctx: HandlerContext, payload: QuoteAcceptedPayloadV1,
) -> HandlerOutcome:
    """Create the pending purchase. Not idempotent on its own; the guard is."""
    now = datetime.now(timezone.utc)
    token = secrets.token_urlsafe(32)

    purchase = PendingPurchase(
        customer_name=payload.customerName,
        customer_phone=payload.customerPhone,
        customer_email=payload.customerEmail,
        whatsapp_conversation_id=payload.whatsappConversationId,
        total_quote_amount=payload.totalQuoteAmount,
        bot_quote_accepted_at=payload.botQuoteAcceptedAt or now,
        bot_conversation_data=(
            json.dumps(payload.botConversationData) if payload.botConversationData else None
        ),
        status="PENDING_REVIEW",
        quote_confirmation_token=token,
        quote_token_expires_at=now + timedelta(days=ctx.settings.quote_token_ttl_days),
        source_event_id=ctx.event.event_id,
        items=[
            PurchaseItem(
                name=item.name,
                brand=item.brand or item.ocrBrand,
                model=item.model or item.ocrModel,
                category=item.category,
                condition=item.condition,
                description=item.description,
                serial_number=item.serialNumber,
                bot_estimated_price=item.botEstimatedPrice,
                proposed_price=item.proposedPrice,
                suggested_sell_price=item.suggestedSellPrice,
                image_urls=list(item.imageUrls),
                status="PENDING",
            )
            for item in payload.items
        ],
    )
    ctx.db.add(purchase)
    await ctx.db.flush()

    logger.info(
        "Pending purchase %s created for %s (%d items)",
        str(purchase.id)[:8], payload.customerName, len(payload.items),
        extra={"event_id": ctx.event.event_id},
    )

    follow_ups = []
    if payload.customerEmail:
        follow_ups.append(partial(
            send_quote_approved,
            ctx.mailer,
            payload.customerName,
            payload.customerEmail,
            token,
            ctx.settings.app_base_url,
            payload.totalQuoteAmount,
        ))

    return HandlerOutcome(
        related=PurchaseRef(str(purchase.id)),
        message=f"Pending purchase {purchase.id} created",
        follow_ups=follow_ups,
    )


QUOTE_ACCEPTED_V1 = HandlerRegistration(
    event_type="quote_accepted",
    version="1.0",
    payload_model=QuoteAcceptedPayloadV1,
    handle=handle_quote_accepted,
    is_applied=is_quote_accepted_applied,
)

"""
Dispatcher - runs a stored PENDING event through its handler exactly once.

Flow: claim PENDING -> PROCESSING, resolve handler, validate payload, consult
the idempotency guard (already applied -> PROCESSED with no handler run), run the
mutation inside a SAVEPOINT, record PROCESSED or FAILED, commit, then run the
handler's best-effort follow-ups.

Handler exceptions stop here. Nothing a handler raises escapes dispatch().
retry_count is never touched on this path.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from gearhook.config import Settings, get_settings
from gearhook.errors import HandlerException, SignatureInvalid, UnsupportedEventType
from gearhook.models.webhook_event import WebhookEventLog, WebhookEventStatus
from gearhook.schemas.related_entity import RelatedEntity
from gearhook.schemas.webhook_payloads import extract_inner_payload
from gearhook.services import event_store
from gearhook.services.handlers import (
    AppliedCheck,
    FollowUp,
    HandlerContext,
    HandlerOutcome,
    HandlerRegistration,
    HandlerRegistry,
    get_default_registry,
)
from gearhook.services.mailer import Mailer

logger = logging.getLogger(__name__)

PAYLOAD_INVALID = "payload_invalid"
ALREADY_APPLIED_NOTE = "Effect already applied by an earlier event; handler skipped"


class PayloadInvalid(Exception):
    pass


@dataclass
class DispatchResult:
    event_id: str
    status: Optional[str] = None
    error_code: Optional[str] = None
    related: Optional[RelatedEntity] = None
    skipped: bool = False


def parse_payload(registration: HandlerRegistration, event: WebhookEventLog) -> Any:
    """Validate the stored inner payload against the handler's model."""
    try:
        return registration.payload_model.model_validate(extract_inner_payload(event.raw_payload))
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(p) for p in err["loc"]) or "payload" for err in e.errors()[:5]
        )
        raise PayloadInvalid(f"Payload failed validation: {fields}") from e


async def execute_handler(
    db: AsyncSession,
    registration: HandlerRegistration,
    ctx: HandlerContext,
    payload: Any,
) -> HandlerOutcome:
    """
    Run the critical mutation inside a SAVEPOINT.
    Any exception rolls back the handler's writes and surfaces as HandlerException.
    """
    try:
        async with db.begin_nested():
            outcome = await registration.handle(ctx, payload)
            await db.flush()
    except Exception as e:
        raise HandlerException(
            f"{type(e).__name__}: {e}",
            details={"event_id": ctx.event.event_id},
        ) from e
    return outcome


async def check_applied(
    registration: HandlerRegistration,
    ctx: HandlerContext,
    payload: Any,
) -> AppliedCheck:
    """Run the registration's idempotency guard. Guard errors surface as HandlerException."""
    try:
        return await registration.is_applied(ctx, payload)
    except Exception as e:
        raise HandlerException(
            f"Idempotency check failed - {type(e).__name__}: {e}",
            details={"event_id": ctx.event.event_id},
        ) from e


async def run_follow_ups(event_id: str, follow_ups: list[FollowUp]) -> int:
    """Run best-effort follow-ups. Returns how many failed (logged, never raised)."""
    failures = 0
    for follow_up in follow_ups:
        try:
            result = await follow_up()
            if isinstance(result, dict) and result.get("status") == "error":
                failures += 1
                logger.warning(
                    "Follow-up for %s reported an error: %s",
                    event_id, result.get("error"),
                    extra={"event_id": event_id},
                )
        except Exception as e:
            failures += 1
            logger.warning(
                "Follow-up for %s failed: %s", event_id, str(e),
                extra={"event_id": event_id},
                exc_info=True,
            )
    return failures


async def dispatch(
    db: AsyncSession,
    event_id: str,
    *,
    mailer: Mailer,
    settings: Optional[Settings] = None,
    registry: Optional[HandlerRegistry] = None,
) -> DispatchResult:
    """Process one PENDING event. Returns skipped=True if another worker owns it."""
    settings = settings or get_settings()
    registry = registry or get_default_registry()

    if not await event_store.claim(db, event_id, [WebhookEventStatus.PENDING]):
        logger.info(
            "Dispatch skipped for %s - not PENDING or already claimed", event_id,
            extra={"event_id": event_id},
        )
        return DispatchResult(event_id=event_id, skipped=True)

    event = await event_store.get_event(db, event_id)
    max_len = settings.error_message_max_length
    follow_ups: list[FollowUp] = []
    related = None

    registration = registry.get(event.event_type, event.version)
    if not event.signature_valid:
        event_store.mark_failed(
            event, SignatureInvalid.error_code, "Signature verification failed", max_len,
        )
    elif registration is None:
        event_store.mark_failed(
            event,
            UnsupportedEventType.error_code,
            f"No handler for {event.event_type} v{event.version}",
            max_len,
        )
    else:
        ctx = HandlerContext(db=db, event=event, mailer=mailer, settings=settings)
        try:
            payload = parse_payload(registration, event)
            check = await check_applied(registration, ctx, payload)
            outcome = None
            if not check.applied:
                outcome = await execute_handler(db, registration, ctx, payload)
        except PayloadInvalid as e:
            event_store.mark_failed(event, PAYLOAD_INVALID, str(e), max_len)
        except HandlerException as e:
            logger.error(
                "Handler failed for %s: %s", event_id, e.message,
                extra={"event_id": event_id, "error_code": e.error_code},
            )
            event_store.mark_failed(event, e.error_code, e.message, max_len)
        else:
            if outcome is None:
                logger.info(
                    "Event %s already applied - handler skipped", event_id,
                    extra={"event_id": event_id, "event_type": event.event_type},
                )
                event_store.mark_processed(event, check.related, note=ALREADY_APPLIED_NOTE)
                related = check.related
            else:
                event_store.mark_processed(event, outcome.related)
                related = outcome.related
                follow_ups = outcome.follow_ups

    await db.commit()

    logger.info(
        "Event %s dispatched: %s%s",
        event_id, event.status, f" ({event.error_code})" if event.error_code else "",
        extra={
            "event_id": event_id,
            "event_type": event.event_type,
            "status": event.status,
            "error_code": event.error_code,
        },
    )

    if follow_ups:
        await run_follow_ups(event_id, follow_ups)

    return DispatchResult(
        event_id=event_id,
        status=event.status,
        error_code=event.error_code,
        related=related,
    )

"""
Replay controller - operator-driven reprocessing of a stored event.

safe:  consult the handler's idempotency guard first. Already applied ->
       no mutation, previous status restored, event marked reviewed.
       Otherwise run the handler exactly as dispatch does.
force: skip the guard and run the handler again. Can create a second
       business entity. Requires a confirmation token from a first request.

Per-event serialization comes from claiming the row (status -> PROCESSING)
with a conditional update; a second replay in flight loses the claim.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from gearhook.config import Settings, get_settings
from gearhook.errors import (
    AlreadyIgnored,
    ConcurrencyConflict,
    EventNotFound,
    ForceConfirmationRequired,
    HandlerException,
    SignatureInvalid,
    UnsupportedEventType,
    ValidationFailed,
)
from gearhook.models.webhook_event import REPLAYABLE_STATUSES, WebhookEventLog
from gearhook.schemas.related_entity import RelatedEntity, to_columns
from gearhook.services import event_store
from gearhook.services.dispatcher import (
    PAYLOAD_INVALID,
    PayloadInvalid,
    execute_handler,
    parse_payload,
    run_follow_ups,
)
from gearhook.services.handlers import HandlerContext, HandlerRegistry, get_default_registry
from gearhook.services.mailer import Mailer
from gearhook.utils.confirmations import consume_force_token, issue_force_token

logger = logging.getLogger(__name__)

REPLAY_MODES = ("safe", "force")


@dataclass
class ReplayResult:
    ok: bool
    noop: bool
    message: str
    status: str
    related: Optional[RelatedEntity] = None
    error_code: Optional[str] = None


def _audit(event_id: str, mode: str, actor_id: str, outcome: str, status: str) -> None:
    logger.info(
        "Replay %s by %s (%s): %s",
        event_id, actor_id, mode, outcome,
        extra={"event_id": event_id, "mode": mode, "actor_id": actor_id, "status": status},
    )


async def _require_force_confirmation(
    event_id: str, actor_id: str, confirm_token: Optional[str], settings: Settings,
) -> None:
    if confirm_token and await consume_force_token(event_id, actor_id, confirm_token):
        return
    token = await issue_force_token(event_id, actor_id, settings.force_confirm_ttl_seconds)
    message = (
        "Confirmation token invalid or expired - confirm again to force replay"
        if confirm_token
        else "Force replay may create duplicate records - confirm to proceed"
    )
    raise ForceConfirmationRequired(
        message,
        details={
            "confirm_token": token,
            "expires_in_seconds": settings.force_confirm_ttl_seconds,
        },
    )


def _check_replayable(event: Optional[WebhookEventLog], event_id: str, mode: str) -> WebhookEventLog:
    if event is None:
        raise EventNotFound(f"Event {event_id} not found")
    if event.is_ignored:
        raise AlreadyIgnored(
            "Event is ignored and cannot be replayed",
            details={"ignored_at": event.ignored_at.isoformat()},
        )
    if event.status not in REPLAYABLE_STATUSES:
        raise ConcurrencyConflict(
            f"Cannot replay event in {event.status} state",
            details={"status": event.status},
        )
    if mode == "safe" and not event.signature_valid:
        raise SignatureInvalid(
            "Event failed signature verification - only force replay may run it",
            http_status=409,
        )
    return event


async def replay_event(
    db: AsyncSession,
    event_id: str,
    mode: str,
    *,
    actor_id: str,
    mailer: Mailer,
    confirm_token: Optional[str] = None,
    settings: Optional[Settings] = None,
    registry: Optional[HandlerRegistry] = None,
) -> ReplayResult:
    settings = settings or get_settings()
    registry = registry or get_default_registry()
    max_len = settings.error_message_max_length

    if mode not in REPLAY_MODES:
        raise ValidationFailed(f"mode must be one of {', '.join(REPLAY_MODES)}")

    event = _check_replayable(await event_store.get_event(db, event_id), event_id, mode)
    previous_status = event.status

    if mode == "force":
        await _require_force_confirmation(event_id, actor_id, confirm_token, settings)

    if not await event_store.claim(db, event_id, [previous_status]):
        raise ConcurrencyConflict(
            "Event is already being processed or replayed",
            details={"event_id": event_id},
        )
    event = await event_store.get_event(db, event_id)

    registration = registry.get(event.event_type, event.version)
    if registration is None:
        event_store.record_retry(event)
        message = f"No handler for {event.event_type} v{event.version}"
        event_store.mark_failed(event, UnsupportedEventType.error_code, message, max_len)
        await db.commit()
        _audit(event_id, mode, actor_id, "unsupported_event_type", event.status)
        return ReplayResult(
            ok=False, noop=False, message=message, status=event.status,
            error_code=UnsupportedEventType.error_code,
        )

    try:
        payload = parse_payload(registration, event)
    except PayloadInvalid as e:
        event_store.record_retry(event)
        event_store.mark_failed(event, PAYLOAD_INVALID, str(e), max_len)
        await db.commit()
        _audit(event_id, mode, actor_id, PAYLOAD_INVALID, event.status)
        return ReplayResult(
            ok=False, noop=False, message=str(e), status=event.status,
            error_code=PAYLOAD_INVALID,
        )

    ctx = HandlerContext(db=db, event=event, mailer=mailer, settings=settings)

    if mode == "safe":
        try:
            check = await registration.is_applied(ctx, payload)
        except Exception as e:
            event.status = previous_status
            await db.commit()
            _audit(event_id, mode, actor_id, "idempotency check failed", event.status)
            raise HandlerException(
                f"Idempotency check failed: {type(e).__name__}: {e}",
                details={"event_id": event_id},
            ) from e

        if check.applied:
            event.status = previous_status
            event.reviewed_at = datetime.now(timezone.utc)
            if check.related is not None and not event.related_entity_id:
                event.related_entity_type, event.related_entity_id = to_columns(check.related)
            await db.commit()
            _audit(event_id, mode, actor_id, "noop (already applied)", event.status)
            return ReplayResult(
                ok=True,
                noop=True,
                message="Already applied - no changes made",
                status=event.status,
                related=check.related,
            )

    event_store.record_retry(event)
    try:
        outcome = await execute_handler(db, registration, ctx, payload)
    except HandlerException as e:
        event_store.mark_failed(event, e.error_code, e.message, max_len)
        await db.commit()
        _audit(event_id, mode, actor_id, f"handler failed: {e.message[:200]}", event.status)
        return ReplayResult(
            ok=False, noop=False, message=event.error_message, status=event.status,
            error_code=e.error_code,
        )

    note = f"Replay ({mode}) by {actor_id}: {outcome.message or 'ok'}"
    event_store.mark_processed(event, outcome.related, note=event_store.truncate_error(note, max_len))
    await db.commit()
    _audit(event_id, mode, actor_id, "processed", event.status)

    if outcome.follow_ups:
        await run_follow_ups(event_id, outcome.follow_ups)

    return ReplayResult(
        ok=True,
        noop=False,
        message=outcome.message or "Replayed",
        status=event.status,
        related=outcome.related,
    )

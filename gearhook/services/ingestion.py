"""
Inbound webhook pipeline: verify -> parse -> store (dedup) -> dispatch.

Outcomes the endpoint acknowledges with 200:
- processed / failed: first delivery, handler ran (or was refused)
- duplicate: event_id already stored, nothing re-run
- ignored: event_id already stored and an operator ignored it
Raised instead: SignatureInvalid (row stored as FAILED first),
ValidationFailed (unparseable body or envelope), StoreUnavailable.
"""
import json
import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from gearhook.config import Settings
from gearhook.errors import DuplicateEvent, SignatureInvalid, ValidationFailed
from gearhook.schemas.webhook_payloads import WebhookEnvelope
from gearhook.services import event_store
from gearhook.services.dispatcher import dispatch
from gearhook.services.handlers import HandlerRegistry
from gearhook.services.mailer import Mailer
from gearhook.utils.webhook_signatures import (
    accepted_secrets,
    compute_payload_hash,
    verify_signature,
)

logger = logging.getLogger(__name__)


@dataclass
class IngestOutcome:
    status: str  # processed, failed, duplicate, ignored, processing
    event_id: str
    error_code: Optional[str] = None
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None


def _parse_envelope(body: bytes) -> tuple[dict, WebhookEnvelope]:
    try:
        raw = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise ValidationFailed("Malformed JSON body") from e
    if not isinstance(raw, dict):
        raise ValidationFailed("Webhook body must be a JSON object")
    try:
        envelope = WebhookEnvelope.model_validate(raw)
    except ValidationError as e:
        raise ValidationFailed(
            "Invalid webhook envelope",
            details={"errors": [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]},
        ) from e
    return raw, envelope


async def ingest_webhook(
    db: AsyncSession,
    body: bytes,
    signature_header: Optional[str],
    *,
    mailer: Mailer,
    settings: Settings,
    source_ip: Optional[str] = None,
    registry: Optional[HandlerRegistry] = None,
) -> IngestOutcome:
    check = verify_signature(body, signature_header, accepted_secrets(settings))

    try:
        raw, envelope = _parse_envelope(body)
    except ValidationFailed:
        if not check.valid:
            # Nothing to key a row on; reject as unauthenticated
            raise SignatureInvalid("Invalid webhook signature")
        raise

    event_id = envelope.event_id
    result = await event_store.insert_if_absent(
        db,
        event_id=event_id,
        event_type=envelope.event_type,
        version=envelope.version,
        raw_payload=raw,
        signature=check,
        source_ip=source_ip,
        payload_hash=compute_payload_hash(body),
        retry_attempts=settings.ingest_store_retry_attempts,
        retry_backoff_seconds=settings.ingest_store_retry_backoff_seconds,
    )
    event = result.event

    if not result.is_new:
        ignored = event.is_ignored
        return IngestOutcome(
            status="ignored" if ignored else "duplicate",
            event_id=event_id,
            error_code=None if ignored else DuplicateEvent.error_code,
            related_entity_type=event.related_entity_type,
            related_entity_id=event.related_entity_id,
        )

    if not check.valid:
        event_store.mark_failed(
            event,
            SignatureInvalid.error_code,
            "Signature verification failed",
            settings.error_message_max_length,
        )
        await db.commit()
        logger.warning(
            "Rejected webhook %s: invalid signature from %s",
            event_id, source_ip or "unknown",
            extra={"event_id": event_id, "error_code": SignatureInvalid.error_code},
        )
        raise SignatureInvalid("Invalid webhook signature", details={"event_id": event_id})

    dispatched = await dispatch(
        db, event_id, mailer=mailer, settings=settings, registry=registry,
    )
    if dispatched.skipped:
        return IngestOutcome(status="processing", event_id=event_id)

    event = await event_store.get_event(db, event_id)
    return IngestOutcome(
        status=dispatched.status.lower(),
        event_id=event_id,
        error_code=dispatched.error_code,
        related_entity_type=event.related_entity_type,
        related_entity_id=event.related_entity_id,
    )

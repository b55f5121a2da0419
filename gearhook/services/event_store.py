"""
Event store - the webhook_event_logs table and its two exclusion points.

1. insert_if_absent: the unique index on event_id decides which delivery of
   an event "wins". The loser is counted as a duplicate on the winning row.
2. claim: a conditional UPDATE moving an event into PROCESSING. Only one
   caller can succeed for a given starting status, which keeps dispatch,
   replay and the sweeper from running the same event twice.

Both commit immediately so other processes see the result.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from gearhook.errors import StoreUnavailable
from gearhook.models.webhook_event import WebhookEventLog, WebhookEventStatus
from gearhook.schemas.related_entity import RelatedEntity, to_columns
from gearhook.schemas.webhook_payloads import build_search_text
from gearhook.utils.logging import get_correlation_id
from gearhook.utils.webhook_signatures import SignatureCheck

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (OperationalError, InterfaceError)


@dataclass
class InsertResult:
    is_new: bool
    event: WebhookEventLog


def truncate_error(message: str, max_length: int) -> str:
    if len(message) <= max_length:
        return message
    return message[: max(0, max_length - 3)] + "..."


def clip(value: Optional[str], max_length: int) -> Optional[str]:
    """Fit a caller-supplied header value to its column width."""
    if value is None:
        return None
    return value[:max_length]


async def get_event(db: AsyncSession, event_id: str) -> Optional[WebhookEventLog]:
    """Fresh read of an event row (bypasses stale identity-map state)."""
    result = await db.execute(
        select(WebhookEventLog)
        .where(WebhookEventLog.event_id == event_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _record_duplicate(db: AsyncSession, event_id: str) -> None:
    await db.execute(
        update(WebhookEventLog)
        .where(WebhookEventLog.event_id == event_id)
        .values(
            duplicate_count=WebhookEventLog.duplicate_count + 1,
            last_duplicate_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )


async def _try_insert(db: AsyncSession, fields: dict[str, Any]) -> InsertResult:
    event = WebhookEventLog(**fields)
    try:
        async with db.begin_nested():
            db.add(event)
            await db.flush()
    except IntegrityError:
        existing = await get_event(db, fields["event_id"])
        if existing is None:
            # Constraint other than event_id uniqueness
            raise
        await _record_duplicate(db, fields["event_id"])
        await db.commit()
        await db.refresh(existing)
        return InsertResult(is_new=False, event=existing)

    await db.commit()
    return InsertResult(is_new=True, event=event)


async def insert_if_absent(
    db: AsyncSession,
    *,
    event_id: str,
    event_type: str,
    version: str,
    raw_payload: dict,
    signature: SignatureCheck,
    source_ip: Optional[str] = None,
    payload_hash: Optional[str] = None,
    retry_attempts: int = 3,
    retry_backoff_seconds: float = 0.2,
) -> InsertResult:
    """
    Store a new event as PENDING, or count a repeat delivery on the existing row.
    Transient store errors are retried; after retry_attempts StoreUnavailable is raised.
    """
    fields = {
        "event_id": event_id,
        "event_type": event_type,
        "version": version,
        "status": WebhookEventStatus.PENDING.value,
        "raw_payload": raw_payload,
        "payload_hash": payload_hash,
        "search_text": build_search_text(raw_payload),
        "source_ip": clip(source_ip, 64),
        "signature_valid": signature.valid,
        "signature_provided": clip(signature.provided, 255),
        "signature_computed": signature.computed,
        "correlation_id": clip(get_correlation_id(), 64),
    }

    attempts = max(1, retry_attempts)
    for attempt in range(1, attempts + 1):
        try:
            result = await _try_insert(db, fields)
        except _TRANSIENT_ERRORS as e:
            await db.rollback()
            logger.warning(
                "Event store write failed (attempt %d/%d) for %s: %s",
                attempt, attempts, event_id, str(e),
                extra={"event_id": event_id},
            )
            if attempt == attempts:
                raise StoreUnavailable(
                    "Event store unavailable",
                    details={"event_id": event_id, "attempts": attempts},
                ) from e
            await asyncio.sleep(retry_backoff_seconds * attempt)
            continue

        if result.is_new:
            logger.info(
                "Webhook event stored: %s (%s v%s, signature_valid=%s)",
                event_id, event_type, version, signature.valid,
                extra={"event_id": event_id, "event_type": event_type},
            )
        else:
            logger.info(
                "Duplicate delivery for %s (seen %d times, status=%s)",
                event_id, result.event.duplicate_count + 1, result.event.status,
                extra={"event_id": event_id, "status": WebhookEventStatus.DUPLICATE.value},
            )
        return result

    raise StoreUnavailable("Event store unavailable", details={"event_id": event_id})


async def claim(
    db: AsyncSession,
    event_id: str,
    from_statuses: Iterable[str],
) -> bool:
    """
    Move an event to PROCESSING if it is still in one of from_statuses and not ignored.
    Returns True if this caller won the claim.
    """
    statuses = [s.value if isinstance(s, WebhookEventStatus) else s for s in from_statuses]
    result = await db.execute(
        update(WebhookEventLog)
        .where(
            WebhookEventLog.event_id == event_id,
            WebhookEventLog.status.in_(statuses),
            WebhookEventLog.ignored_at.is_(None),
        )
        .values(
            status=WebhookEventStatus.PROCESSING.value,
            processing_started_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


def mark_processed(
    event: WebhookEventLog,
    related: Optional[RelatedEntity] = None,
    note: Optional[str] = None,
) -> None:
    """Terminal success. Keeps an existing related pointer when none is returned."""
    event.status = WebhookEventStatus.PROCESSED.value
    event.processed_at = datetime.now(timezone.utc)
    event.error_code = None
    event.error_message = note
    if related is not None:
        event.related_entity_type, event.related_entity_id = to_columns(related)


def mark_failed(
    event: WebhookEventLog,
    error_code: str,
    message: str,
    max_length: int = 1000,
) -> None:
    """Terminal failure with a truncated message. retry_count is not touched here."""
    event.status = WebhookEventStatus.FAILED.value
    event.processed_at = datetime.now(timezone.utc)
    event.error_code = error_code
    event.error_message = truncate_error(message, max_length)


def record_retry(event: WebhookEventLog) -> None:
    """Replay bookkeeping. The only place retry_count changes."""
    event.retry_count = (event.retry_count or 0) + 1
    event.last_retried_at = datetime.now(timezone.utc)

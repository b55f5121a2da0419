"""
Ignore registry - permanently drop an event from the open-failures queue.
A note is always required. There is no un-ignore.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from gearhook.errors import AlreadyIgnored, EventNotFound, ValidationFailed
from gearhook.models.webhook_event import WebhookEventLog
from gearhook.services.event_store import get_event

logger = logging.getLogger(__name__)

MAX_NOTE_LENGTH = 2000


async def ignore_event(
    db: AsyncSession,
    event_id: str,
    note: Optional[str],
    actor_id: str,
) -> WebhookEventLog:
    note = (note or "").strip()
    if not note:
        raise ValidationFailed("A note is required to ignore an event", details={"field": "note"})
    if len(note) > MAX_NOTE_LENGTH:
        raise ValidationFailed(
            f"Note must be at most {MAX_NOTE_LENGTH} characters", details={"field": "note"},
        )

    event = await get_event(db, event_id)
    if event is None:
        raise EventNotFound(f"Event {event_id} not found")
    if event.is_ignored:
        raise AlreadyIgnored("Event is already ignored")

    # Conditional on ignored_at so two operators cannot both ignore
    result = await db.execute(
        update(WebhookEventLog)
        .where(
            WebhookEventLog.event_id == event_id,
            WebhookEventLog.ignored_at.is_(None),
        )
        .values(
            ignored_at=datetime.now(timezone.utc),
            ignored_by_user_id=actor_id,
            ignore_note=note,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise AlreadyIgnored("Event is already ignored")
    await db.commit()

    logger.info(
        "Event %s ignored by %s", event_id, actor_id,
        extra={"event_id": event_id, "actor_id": actor_id},
    )
    return await get_event(db, event_id)

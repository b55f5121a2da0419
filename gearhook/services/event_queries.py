"""
Read-only views over the webhook event log for the admin screens.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import desc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from gearhook.models.webhook_event import WebhookEventLog, WebhookEventStatus

logger = logging.getLogger(__name__)

ALL_STATUSES = "ALL"
STORED_STATUSES = (
    WebhookEventStatus.PENDING.value,
    WebhookEventStatus.PROCESSING.value,
    WebhookEventStatus.PROCESSED.value,
    WebhookEventStatus.FAILED.value,
)


def _escape_like(term: str) -> str:
    """Make % and _ in a search term match literally."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass
class Pagination:
    page: int
    page_size: int
    total: int
    total_pages: int


async def summarize(db: AsyncSession) -> dict:
    """Counts by status and by event type, plus the open-failure count."""
    by_status = {status: 0 for status in STORED_STATUSES}
    rows = await db.execute(
        select(WebhookEventLog.status, func.count()).group_by(WebhookEventLog.status)
    )
    for status, count in rows.all():
        by_status[status] = count

    rows = await db.execute(
        select(WebhookEventLog.event_type, func.count()).group_by(WebhookEventLog.event_type)
    )
    by_event_type = {event_type: count for event_type, count in rows.all()}

    failed_not_ignored = (await db.execute(
        select(func.count()).select_from(WebhookEventLog).where(
            WebhookEventLog.status == WebhookEventStatus.FAILED.value,
            WebhookEventLog.ignored_at.is_(None),
        )
    )).scalar() or 0

    ignored = (await db.execute(
        select(func.count()).select_from(WebhookEventLog).where(
            WebhookEventLog.ignored_at.is_not(None),
        )
    )).scalar() or 0

    duplicates = (await db.execute(
        select(func.coalesce(func.sum(WebhookEventLog.duplicate_count), 0))
    )).scalar() or 0

    return {
        "by_status": by_status,
        "by_event_type": by_event_type,
        "failed_not_ignored_count": failed_not_ignored,
        "ignored_count": ignored,
        "duplicate_deliveries": int(duplicates),
    }


async def list_events(
    db: AsyncSession,
    status: Optional[str] = WebhookEventStatus.FAILED.value,
    event_type: Optional[str] = None,
    q: Optional[str] = None,
    page: int = 1,
    page_size: int = 50,
    include_ignored: bool = False,
) -> tuple[list[WebhookEventLog], Pagination]:
    """
    Newest first. The default FAILED view hides ignored events unless
    include_ignored is set. q matches event_id or customer name/phone/email.
    """
    page = max(1, page)
    page_size = max(1, page_size)
    query = select(WebhookEventLog)

    status = (status or "").strip().upper()
    if status and status != ALL_STATUSES:
        query = query.where(WebhookEventLog.status == status)
    if event_type:
        query = query.where(WebhookEventLog.event_type == event_type)
    if q and q.strip():
        pattern = f"%{_escape_like(q.strip())}%"
        query = query.where(or_(
            WebhookEventLog.event_id.ilike(pattern, escape="\\"),
            WebhookEventLog.search_text.ilike(pattern.lower(), escape="\\"),
        ))
    if status == WebhookEventStatus.FAILED.value and not include_ignored:
        query = query.where(WebhookEventLog.ignored_at.is_(None))

    count_q = select(func.count()).select_from(query.subquery())
    total = (await db.execute(count_q)).scalar() or 0

    query = (
        query.order_by(desc(WebhookEventLog.received_at))
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    result = await db.execute(query)
    events = list(result.scalars().all())

    return events, Pagination(
        page=page,
        page_size=page_size,
        total=total,
        total_pages=(total + page_size - 1) // page_size,
    )

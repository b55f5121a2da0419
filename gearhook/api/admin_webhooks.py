"""
Admin webhook events API - list, summary, detail, replay, ignore.
All endpoints require admin-level JWT authentication.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from gearhook.api.auth import StaffUser, get_current_admin
from gearhook.api.dependencies import get_app_settings, get_mailer, get_registry
from gearhook.config import Settings
from gearhook.database import get_db
from gearhook.errors import EventNotFound
from gearhook.models.webhook_event import WebhookEventLog
from gearhook.schemas.api_responses import (
    EventDetail,
    EventListResponse,
    EventSummaryItem,
    IgnoreRequest,
    IgnoreResponse,
    PaginationInfo,
    ReplayRequest,
    ReplayResponse,
    SummaryResponse,
)
from gearhook.schemas.related_entity import to_columns
from gearhook.services.event_queries import list_events, summarize
from gearhook.services.event_store import get_event
from gearhook.services.handlers import HandlerRegistry
from gearhook.services.ignore import ignore_event
from gearhook.services.mailer import Mailer
from gearhook.services.replay import replay_event

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/admin/webhooks", tags=["admin-webhooks"])

_SUMMARY_FIELDS = tuple(EventSummaryItem.model_fields)
_DETAIL_FIELDS = tuple(EventDetail.model_fields)


def _summary_item(event: WebhookEventLog) -> EventSummaryItem:
    data = {name: getattr(event, name) for name in _SUMMARY_FIELDS if name != "id"}
    return EventSummaryItem(id=str(event.id), **data)


def _detail(event: WebhookEventLog) -> EventDetail:
    data = {name: getattr(event, name) for name in _DETAIL_FIELDS if name != "id"}
    return EventDetail(id=str(event.id), **data)


@router.get("/events", response_model=EventListResponse)
async def admin_list_events(
    status: str = Query(default="FAILED"),
    event_type: Optional[str] = Query(default=None, alias="eventType"),
    q: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200, alias="pageSize"),
    include_ignored: bool = Query(default=False, alias="includeIgnored"),
    db: AsyncSession = Depends(get_db),
    admin: StaffUser = Depends(get_current_admin),
):
    """Events newest first. Defaults to open failures (FAILED, not ignored)."""
    events, pagination = await list_events(
        db,
        status=status,
        event_type=event_type,
        q=q,
        page=page,
        page_size=page_size,
        include_ignored=include_ignored,
    )
    return EventListResponse(
        events=[_summary_item(e) for e in events],
        pagination=PaginationInfo(
            page=pagination.page,
            page_size=pagination.page_size,
            total=pagination.total,
            total_pages=pagination.total_pages,
        ),
    )


@router.get("/events/summary", response_model=SummaryResponse)
async def admin_events_summary(
    db: AsyncSession = Depends(get_db),
    admin: StaffUser = Depends(get_current_admin),
):
    """Counts by status and event type."""
    return SummaryResponse(**await summarize(db))


@router.get("/events/{event_id}", response_model=EventDetail)
async def admin_event_detail(
    event_id: str,
    db: AsyncSession = Depends(get_db),
    admin: StaffUser = Depends(get_current_admin),
):
    """Full stored record: raw payload, both signatures, ignore metadata."""
    event = await get_event(db, event_id)
    if event is None:
        raise EventNotFound(f"Event {event_id} not found")
    return _detail(event)


@router.post("/events/{event_id}/replay", response_model=ReplayResponse)
async def admin_replay_event(
    event_id: str,
    payload: ReplayRequest,
    db: AsyncSession = Depends(get_db),
    admin: StaffUser = Depends(get_current_admin),
    mailer: Mailer = Depends(get_mailer),
    settings: Settings = Depends(get_app_settings),
    registry: HandlerRegistry = Depends(get_registry),
):
    """
    Replay a FAILED or PROCESSED event.
    force answers 428 with a confirm_token first; send it back to execute.
    """
    result = await replay_event(
        db,
        event_id,
        payload.mode,
        actor_id=admin.id,
        mailer=mailer,
        confirm_token=payload.confirm_token,
        settings=settings,
        registry=registry,
    )
    related_type, related_id = to_columns(result.related)
    return ReplayResponse(
        success=result.ok,
        noop=result.noop,
        message=result.message,
        status=result.status,
        error_code=result.error_code,
        related_entity_type=related_type,
        related_entity_id=related_id,
    )


@router.post("/events/{event_id}/ignore", response_model=IgnoreResponse)
async def admin_ignore_event(
    event_id: str,
    payload: IgnoreRequest,
    db: AsyncSession = Depends(get_db),
    admin: StaffUser = Depends(get_current_admin),
):
    """Permanently drop an event from the failure queue. Note required."""
    event = await ignore_event(db, event_id, payload.note, admin.id)
    return IgnoreResponse(
        event_id=event.event_id,
        ignored_at=event.ignored_at,
        ignored_by_user_id=event.ignored_by_user_id,
        ignore_note=event.ignore_note,
    )

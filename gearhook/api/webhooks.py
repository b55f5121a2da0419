"""
Inbound webhook endpoint for the Kapso WhatsApp sales bot.

Always answers fast. 200 for every outcome the bot should not retry
(processed, failed handler, duplicate, ignored); 401 for a bad signature
(the event is still stored for audit); 400 for a body that is not a valid
envelope; 503 when the event store is unavailable so the bot retries.
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from gearhook.api.dependencies import get_app_settings, get_mailer, get_registry
from gearhook.config import Settings
from gearhook.database import get_db
from gearhook.schemas.api_responses import IngestResponse
from gearhook.services.handlers import HandlerRegistry
from gearhook.services.ingestion import ingest_webhook
from gearhook.services.mailer import Mailer
from gearhook.utils.webhook_signatures import SIGNATURE_HEADER

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()[:64]
    return request.client.host if request.client else None


@router.post("/api/v1/webhooks/kapso", response_model=IngestResponse)
@router.post("/api/webhooks/quote-accepted", response_model=IngestResponse, include_in_schema=False)
async def receive_kapso_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
    settings: Settings = Depends(get_app_settings),
    registry: HandlerRegistry = Depends(get_registry),
):
    """Verify, store exactly once, and dispatch a bot event."""
    body = await request.body()
    outcome = await ingest_webhook(
        db,
        body,
        request.headers.get(SIGNATURE_HEADER),
        mailer=mailer,
        settings=settings,
        source_ip=_client_ip(request),
        registry=registry,
    )
    return IngestResponse(
        status=outcome.status,
        event_id=outcome.event_id,
        error_code=outcome.error_code,
        related_entity_type=outcome.related_entity_type,
        related_entity_id=outcome.related_entity_id,
    )

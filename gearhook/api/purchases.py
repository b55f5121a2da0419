"""
Incoming gear endpoints - mark a purchase's gear as received, or undo it
before the delayed customer notification goes out.
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from gearhook.api.auth import StaffUser, get_current_user
from gearhook.api.dependencies import get_app_settings
from gearhook.config import Settings
from gearhook.database import get_db
from gearhook.schemas.api_responses import PurchaseReceivedResponse
from gearhook.services.purchases import mark_received, undo_received

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/purchases", tags=["purchases"])


@router.post("/{purchase_id}/mark-received", response_model=PurchaseReceivedResponse)
async def mark_gear_received(
    purchase_id: str,
    db: AsyncSession = Depends(get_db),
    user: StaffUser = Depends(get_current_user),
    settings: Settings = Depends(get_app_settings),
):
    purchase, job = await mark_received(db, purchase_id, user.id, settings)
    minutes = settings.gear_received_notify_delay_minutes
    return PurchaseReceivedResponse(
        purchase_id=str(purchase.id),
        status=purchase.status,
        gear_received_at=purchase.gear_received_at,
        notify_at=job.run_at,
        message=f"Gear marked as received. Client will be notified in {minutes} minutes.",
    )


@router.post("/{purchase_id}/undo-received", response_model=PurchaseReceivedResponse)
async def undo_gear_received(
    purchase_id: str,
    db: AsyncSession = Depends(get_db),
    user: StaffUser = Depends(get_current_user),
):
    purchase = await undo_received(db, purchase_id, user.id)
    return PurchaseReceivedResponse(
        purchase_id=str(purchase.id),
        status=purchase.status,
        gear_received_at=None,
        notify_at=None,
        message="Gear received undone. Client will not be notified.",
    )

"""
Database models - import all models here so Alembic can discover them.
"""
from gearhook.models.webhook_event import WebhookEventLog, WebhookEventStatus
from gearhook.models.purchase import PendingPurchase, PurchaseItem
from gearhook.models.scheduled_job import ScheduledJob

__all__ = [
    "WebhookEventLog",
    "WebhookEventStatus",
    "PendingPurchase",
    "PurchaseItem",
    "ScheduledJob",
]

"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from gearhook.api.webhooks import router as webhooks_router
from gearhook.api.admin_webhooks import router as admin_webhooks_router
from gearhook.api.purchases import router as purchases_router
from gearhook.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(webhooks_router)
api_router.include_router(admin_webhooks_router)
api_router.include_router(purchases_router)
api_router.include_router(health_router)

"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.webhook_admin import router as webhook_admin_router
from app.api.webhooks.mercadopago import router as mercadopago_router

router = APIRouter()

# Provider notifications: POST /api/checkout/webhook
router.include_router(mercadopago_router, prefix="/checkout", tags=["webhooks"])
# Operator endpoints: /api/webhooks/...
router.include_router(webhook_admin_router, prefix="/webhooks", tags=["webhook-admin"])

"""
Domain Services
"""
from app.domain.services.order_repository import OrderRepository
from app.domain.services.mercadopago_client import MercadoPagoClient
from app.domain.services.email_service import EmailDispatcher
from app.domain.services.webhook_queue_service import WebhookQueueService
from app.domain.services.queue_processor import WebhookQueueProcessor, BatchResult
from app.domain.services.reconciliation_service import ReconciliationJob

__all__ = [
    "OrderRepository",
    "MercadoPagoClient",
    "EmailDispatcher",
    "WebhookQueueService",
    "WebhookQueueProcessor",
    "BatchResult",
    "ReconciliationJob",
]

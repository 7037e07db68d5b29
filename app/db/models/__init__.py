"""
Database Models
"""
from app.db.models.webhook_queue import WebhookQueueEvent, WebhookQueueStatus
from app.db.models.dead_letter import WebhookDeadLetter, DeadLetterStatus
from app.db.models.reconciliation_log import ReconciliationLog, ReconciliationStatus
from app.db.models.cart import Cart, CartItem, ProductVariation
from app.db.models.order import Order, OrderItem, OrderStatus
from app.db.models.payment_log import PaymentLog

__all__ = [
    "WebhookQueueEvent",
    "WebhookQueueStatus",
    "WebhookDeadLetter",
    "DeadLetterStatus",
    "ReconciliationLog",
    "ReconciliationStatus",
    "Cart",
    "CartItem",
    "ProductVariation",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentLog",
]

"""
Webhook Queue Model - durable work items for payment notifications
"""
import enum
from sqlalchemy import (
    Column, Integer, String, DateTime, Enum as SQLEnum, JSON, UniqueConstraint, Index
)

from app.core.clock import utcnow
from app.core.config import settings
from app.db.database import Base


class WebhookQueueStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookQueueEvent(Base):
    """
    One row per (payment_id, event_type).

    The unique constraint is what makes redelivered notifications collapse
    into the row that is already queued.
    """

    __tablename__ = "webhook_queue"
    __table_args__ = (
        UniqueConstraint("payment_id", "event_type", name="uq_webhook_queue_payment_event"),
        Index("ix_webhook_queue_ready", "status", "next_retry_at"),
    )

    id = Column(Integer, primary_key=True, index=True)

    payment_id = Column(String(64), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    webhook_data = Column(JSON, nullable=False)

    status = Column(
        SQLEnum(WebhookQueueStatus),
        default=WebhookQueueStatus.PENDING,
        nullable=False,
    )
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(
        Integer,
        default=lambda: settings.WEBHOOK_QUEUE_MAX_RETRIES,
        nullable=False,
    )

    next_retry_at = Column(DateTime, default=utcnow, nullable=True)
    last_error = Column(String(2000), nullable=True)
    last_attempt_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<WebhookQueueEvent id={self.id} payment_id={self.payment_id} "
            f"status={self.status} retry_count={self.retry_count}>"
        )

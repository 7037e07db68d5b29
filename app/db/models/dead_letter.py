"""
Dead-letter store for webhook events that exhausted their retry budget
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, ForeignKey, Text

from app.core.clock import utcnow
from app.db.database import Base


class DeadLetterStatus(str, enum.Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"


class WebhookDeadLetter(Base):
    """Written once per exhausted queue event; reviewed by an operator"""

    __tablename__ = "webhook_dead_letter"

    id = Column(Integer, primary_key=True, index=True)

    webhook_queue_id = Column(
        Integer,
        ForeignKey("webhook_queue.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    payment_id = Column(String(64), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    webhook_data = Column(JSON, nullable=False)

    total_attempts = Column(Integer, nullable=False)
    final_error = Column(Text, nullable=False)
    error_details = Column(JSON, nullable=True)

    status = Column(
        SQLEnum(DeadLetterStatus),
        default=DeadLetterStatus.PENDING,
        nullable=False,
        index=True,
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)
    reviewed_at = Column(DateTime, nullable=True)
    reviewed_by = Column(String(255), nullable=True)
    review_notes = Column(Text, nullable=True)

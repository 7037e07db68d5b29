"""
Payment Log Model - one row per observed provider status of a payment
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey

from app.core.clock import utcnow
from app.db.database import Base


class PaymentLog(Base):
    """The newest row for a payment_id is the idempotency signal"""

    __tablename__ = "payment_logs"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    payment_id = Column(String(64), nullable=False, index=True)

    # Raw provider status (approved, in_process, charged_back, ...)
    status = Column(String(50), nullable=False)
    status_detail = Column(String(255), nullable=True)
    event_type = Column(String(50), nullable=True)
    response_body = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

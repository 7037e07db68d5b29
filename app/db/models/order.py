"""
Order Models
"""
import enum
import uuid
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, ForeignKey, Numeric
from sqlalchemy.orm import relationship

from app.core.clock import utcnow
from app.db.database import Base


def _uuid_str() -> str:
    return str(uuid.uuid4())


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# No payment notification may move an order out of these back to pending
TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.APPROVED,
    OrderStatus.REJECTED,
    OrderStatus.CANCELLED,
})


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    order_number = Column(String(32), nullable=True, unique=True)

    status = Column(SQLEnum(OrderStatus), default=OrderStatus.PENDING, nullable=False, index=True)
    payment_id = Column(String(64), nullable=True, index=True)
    cart_id = Column(String(36), ForeignKey("carts.id", ondelete="SET NULL"), nullable=True)

    customer_email = Column(String(255), nullable=False)
    customer_name = Column(String(255), nullable=True)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", lazy="selectin")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    variation_id = Column(String(36), ForeignKey("product_variations.id"), nullable=True)

    product_name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")

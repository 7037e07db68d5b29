"""
Cart and Product Variation Models
"""
import uuid
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric
from sqlalchemy.orm import relationship

from app.core.clock import utcnow
from app.db.database import Base


def _uuid_str() -> str:
    return str(uuid.uuid4())


class ProductVariation(Base):
    __tablename__ = "product_variations"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    sku = Column(String(64), nullable=True, unique=True)
    name = Column(String(255), nullable=False)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    stock = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Cart(Base):
    __tablename__ = "carts"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship("CartItem", back_populates="cart", lazy="selectin")


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(String(36), ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    variation_id = Column(String(36), ForeignKey("product_variations.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    price_at_addition = Column(Numeric(12, 2), nullable=False)

    cart = relationship("Cart", back_populates="items")

"""
Order Repository - order, payment-log, stock and cart data access used by the
payment pipeline.

Every mutation is a single statement followed by a commit. Reads use
``populate_existing`` so a row already in the session identity map is
refreshed from the database instead of being served stale.
"""
from decimal import Decimal
from typing import Iterable

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.clock import utcnow
from app.core.logging import get_logger
from app.db.models.cart import Cart, CartItem, ProductVariation
from app.db.models.order import Order, OrderItem, OrderStatus
from app.db.models.payment_log import PaymentLog

logger = get_logger(__name__)


class OrderRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_order_by_id(self, order_id: str) -> Order | None:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_order_with_items(self, order_id: str) -> Order | None:
        result = await self.db.execute(
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def update_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        payment_id: str | None = None,
        *,
        unless_status_in: Iterable[OrderStatus] | None = None,
    ) -> bool:
        """
        Set the order status (and payment id). With ``unless_status_in`` the
        update only applies while the stored status is outside that set.

        Returns True when the row was updated.
        """
        values: dict = {"status": status, "updated_at": utcnow()}
        if payment_id is not None:
            values["payment_id"] = payment_id

        stmt = update(Order).where(Order.id == order_id)
        if unless_status_in:
            stmt = stmt.where(Order.status.not_in(list(unless_status_in)))

        result = await self.db.execute(stmt.values(**values))
        await self.db.commit()
        return result.rowcount == 1

    async def save_payment_log(
        self,
        order_id: str,
        payment_id: str,
        status: str,
        status_detail: str | None = None,
        event_type: str = "payment",
        response_body: dict | None = None,
    ) -> PaymentLog:
        """Append a payment log row; ``status`` is stored as the provider sent it"""
        log = PaymentLog(
            order_id=order_id,
            payment_id=payment_id,
            status=status or "unknown",
            status_detail=status_detail or None,
            event_type=event_type,
            response_body=response_body,
        )
        self.db.add(log)
        await self.db.commit()
        return log

    async def get_payment_log_by_payment_id(self, payment_id: str) -> PaymentLog | None:
        """Most recent log for ``payment_id``"""
        result = await self.db.execute(
            select(PaymentLog)
            .where(PaymentLog.payment_id == payment_id)
            .order_by(PaymentLog.created_at.desc(), PaymentLog.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def decrement_stock_for_order(self, order_id: str) -> int:
        """
        Subtract each item's quantity from its variation, flooring at zero.

        Returns the number of variations touched.
        """
        result = await self.db.execute(
            select(OrderItem.variation_id, OrderItem.quantity).where(
                OrderItem.order_id == order_id,
                OrderItem.variation_id.is_not(None),
            )
        )
        items = result.all()

        for variation_id, quantity in items:
            remaining = ProductVariation.stock - quantity
            await self.db.execute(
                update(ProductVariation)
                .where(ProductVariation.id == variation_id)
                .values(
                    stock=case((remaining > 0, remaining), else_=0),
                    updated_at=utcnow(),
                )
            )

        await self.db.commit()
        logger.info(
            "Stock decremented for order",
            extra_data={"order_id": order_id, "variations": len(items)},
        )
        return len(items)

    async def get_cart_id_by_order_id(self, order_id: str) -> str | None:
        result = await self.db.execute(select(Order.cart_id).where(Order.id == order_id))
        return result.scalar_one_or_none()

    async def clear_cart(self, cart_id: str) -> None:
        await self.db.execute(delete(CartItem).where(CartItem.cart_id == cart_id))
        await self.db.commit()

    async def update_cart_total(self, cart_id: str) -> Decimal:
        """Recompute ``carts.total_amount`` as the sum of quantity * price_at_addition"""
        result = await self.db.execute(
            select(
                func.coalesce(
                    func.sum(CartItem.quantity * CartItem.price_at_addition), 0
                )
            ).where(CartItem.cart_id == cart_id)
        )
        total = Decimal(str(result.scalar_one()))

        await self.db.execute(
            update(Cart)
            .where(Cart.id == cart_id)
            .values(total_amount=total, updated_at=utcnow())
        )
        await self.db.commit()
        return total

"""
Order confirmation email via the Resend HTTP API.
"""
from decimal import Decimal
from html import escape

import httpx

from app.core.circuit_breaker import get_email_circuit_breaker
from app.core.config import settings
from app.core.exceptions import EmailDispatchError, ServiceTimeoutError
from app.core.logging import get_logger
from app.db.models.order import Order
from app.domain.services.order_repository import OrderRepository

logger = get_logger(__name__)


def _money(value) -> str:
    return f"${Decimal(str(value or 0)):,.2f}"


def render_order_confirmation(order: Order) -> tuple[str, str]:
    """Return (subject, html) for an approved order"""
    subject = f"Order confirmed! #{order.order_number or order.id}"

    rows = "".join(
        "<tr>"
        f"<td>{escape(item.product_name)}</td>"
        f"<td style=\"text-align:center\">{item.quantity}</td>"
        f"<td style=\"text-align:right\">{_money(item.unit_price * item.quantity)}</td>"
        "</tr>"
        for item in order.items
    )
    greeting = escape(order.customer_name) if order.customer_name else "there"

    html = (
        "<html><body>"
        f"<h1>Thanks for your purchase, {greeting}!</h1>"
        f"<p>Your payment for order <strong>#{escape(str(order.order_number or order.id))}</strong> "
        "was approved.</p>"
        "<table width=\"100%\" cellpadding=\"4\">"
        "<thead><tr><th align=\"left\">Product</th><th>Qty</th><th align=\"right\">Subtotal</th></tr></thead>"
        f"<tbody>{rows}</tbody>"
        "</table>"
        f"<p><strong>Total: {_money(order.total_amount)}</strong></p>"
        "</body></html>"
    )
    return subject, html


class EmailDispatcher:
    """
    Sends transactional emails for the payment pipeline.

    A missing ``RESEND_API_KEY``, a missing order, customer email or order
    items skip the send with an error log. Provider failures raise
    ``EmailDispatchError`` / ``ServiceTimeoutError``.
    """

    def __init__(
        self,
        repository: OrderRepository,
        api_key: str | None = None,
        api_url: str | None = None,
        from_email: str | None = None,
        timeout_seconds: float | None = None,
    ):
        self.repository = repository
        self._api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self._api_url = (api_url or settings.RESEND_API_URL).rstrip("/")
        self._from_email = from_email or settings.RESEND_FROM_EMAIL
        self._timeout = timeout_seconds or settings.EMAIL_TIMEOUT_SECONDS
        self._circuit_breaker = get_email_circuit_breaker()

    async def send_order_confirmation_email(self, order_id: str) -> bool:
        """Returns True when the provider accepted the email"""
        if not self._api_key:
            logger.error(
                "RESEND_API_KEY not configured, skipping confirmation email",
                extra_data={"order_id": order_id},
            )
            return False

        order = await self.repository.get_order_with_items(order_id)
        if order is None:
            logger.error("Order not found for confirmation email", extra_data={"order_id": order_id})
            return False
        if not order.customer_email:
            logger.error("No customer email for order", extra_data={"order_id": order_id})
            return False
        if not order.items:
            logger.error("No order items for order", extra_data={"order_id": order_id})
            return False

        subject, html = render_order_confirmation(order)
        payload = {
            "from": self._from_email,
            "to": [order.customer_email],
            "subject": subject,
            "html": html,
        }

        async def _send() -> dict:
            try:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(
                        f"{self._api_url}/emails",
                        headers={"Authorization": f"Bearer {self._api_key}"},
                        json=payload,
                    )
            except httpx.TimeoutException as exc:
                raise ServiceTimeoutError("email", self._timeout) from exc
            except httpx.RequestError as exc:
                raise EmailDispatchError(f"network error: {exc}") from exc

            if response.status_code not in (200, 201, 202):
                raise EmailDispatchError(
                    f"provider returned status {response.status_code}",
                    details={"status_code": response.status_code, "response_text": response.text[:500]},
                )
            return response.json()

        data = await self._circuit_breaker.execute(_send)
        logger.info(
            "Confirmation email sent",
            extra_data={
                "order_id": order_id,
                "order_number": order.order_number,
                "email_id": data.get("id") if isinstance(data, dict) else None,
            },
        )
        return True

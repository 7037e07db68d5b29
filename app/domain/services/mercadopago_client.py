"""
Mercado Pago API client.

Only the two calls the pipeline needs: fetching a payment (the source of
truth for a notification) and creating a checkout preference. Every call goes
through the shared Mercado Pago circuit breaker; timeouts and non-2xx answers
are raised as ``ExternalServiceException`` subclasses so the queue processor
can schedule a retry.
"""
from typing import Any

import httpx

from app.core.circuit_breaker import get_mercadopago_circuit_breaker
from app.core.config import settings
from app.core.exceptions import PaymentProviderError, ServiceTimeoutError
from app.core.logging import get_logger

logger = get_logger(__name__)


def build_external_reference(customer_email: str, order_id: str) -> str:
    """``<email>|<order id>``; the processor reads the order id back from the last segment"""
    return f"{customer_email}|{order_id}"


def build_order_preference(
    *,
    order_id: str,
    customer_email: str,
    customer_name: str | None,
    items: list[dict[str, Any]],
    notification_url: str,
    back_urls: dict[str, str],
) -> dict[str, Any]:
    """
    Preference body for a checkout.

    ``items`` entries need ``title``, ``quantity`` and ``unit_price``; an
    optional ``id`` is forwarded.
    """
    return {
        "items": [
            {
                "id": str(item.get("id", index)),
                "title": item["title"],
                "quantity": int(item["quantity"]),
                "unit_price": float(item["unit_price"]),
                "currency_id": item.get("currency_id", "ARS"),
            }
            for index, item in enumerate(items)
        ],
        "payer": {
            "email": customer_email,
            "name": customer_name or "",
        },
        "back_urls": back_urls,
        "auto_return": "approved",
        "external_reference": build_external_reference(customer_email, order_id),
        "notification_url": notification_url,
    }


class MercadoPagoClient:
    """Thin async wrapper over the Mercado Pago REST API"""

    def __init__(
        self,
        access_token: str | None = None,
        api_url: str | None = None,
        timeout_seconds: float | None = None,
        integrator_id: str | None = None,
    ):
        self._access_token = access_token if access_token is not None else settings.MERCADOPAGO_ACCESS_TOKEN
        self._api_url = (api_url or settings.MERCADOPAGO_API_URL).rstrip("/")
        self._timeout = timeout_seconds or settings.MERCADOPAGO_TIMEOUT_SECONDS
        self._integrator_id = (
            integrator_id if integrator_id is not None else settings.MERCADOPAGO_INTEGRATOR_ID
        )
        self._circuit_breaker = get_mercadopago_circuit_breaker()

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json",
        }
        if self._integrator_id:
            headers["x-integrator-id"] = self._integrator_id
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not self._access_token:
            raise PaymentProviderError(
                "MERCADOPAGO_ACCESS_TOKEN is not configured",
                details={"operation": operation},
            )

        async def _call() -> httpx.Response:
            try:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(
                        method,
                        f"{self._api_url}{path}",
                        headers=self._headers(),
                        json=json_body,
                    )
            except httpx.TimeoutException as exc:
                raise ServiceTimeoutError("mercadopago", self._timeout) from exc
            except httpx.RequestError as exc:
                raise PaymentProviderError(
                    f"{operation} network error: {exc}",
                    details={"operation": operation, "network_error": True},
                ) from exc

            # Server errors and throttling count against the breaker
            if response.status_code >= 500 or response.status_code == 429:
                raise PaymentProviderError.from_response(operation, response)
            return response

        response = await self._circuit_breaker.execute(_call)

        # 4xx answers do not count against the breaker
        if response.status_code not in (200, 201):
            raise PaymentProviderError.from_response(operation, response)

        try:
            return response.json()
        except ValueError as exc:
            raise PaymentProviderError(
                f"{operation} returned a non-JSON body",
                details={"operation": operation},
            ) from exc

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        """
        Fetch a payment by id.

        The answer carries ``status``, ``status_detail`` and
        ``external_reference`` among other fields.
        """
        payment = await self._request("GET", f"/v1/payments/{payment_id}", "get_payment")
        logger.debug(
            "Fetched payment from Mercado Pago",
            extra_data={"payment_id": payment_id, "status": payment.get("status")},
        )
        return payment

    async def create_preference(self, preference: dict[str, Any]) -> dict[str, Any]:
        """Create a checkout preference; returns the provider's preference object"""
        created = await self._request(
            "POST", "/checkout/preferences", "create_preference", json_body=preference
        )
        logger.info(
            "Mercado Pago preference created",
            extra_data={
                "preference_id": created.get("id"),
                "external_reference": preference.get("external_reference"),
            },
        )
        return created

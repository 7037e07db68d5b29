"""
Tests for the Mercado Pago API client (app/domain/services/mercadopago_client.py)
"""
from contextlib import contextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from app.core.circuit_breaker import CircuitState, get_mercadopago_circuit_breaker
from app.core.exceptions import CircuitBreakerOpenError, PaymentProviderError, ServiceTimeoutError
from app.domain.services.mercadopago_client import (
    MercadoPagoClient,
    build_external_reference,
    build_order_preference,
)


def _response(status_code: int = 200, body: dict | None = None, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.json.return_value = body if body is not None else {}
    return response


@contextmanager
def _mock_http(response: MagicMock | None = None, error: Exception | None = None):
    """Patch httpx.AsyncClient; yields the mocked client instance"""
    with patch("httpx.AsyncClient") as mock_client:
        mock_instance = AsyncMock()
        if error is not None:
            mock_instance.request = AsyncMock(side_effect=error)
        else:
            mock_instance.request = AsyncMock(return_value=response)
        mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
        mock_instance.__aexit__ = AsyncMock(return_value=None)
        mock_client.return_value = mock_instance
        yield mock_instance


@pytest.fixture
def client() -> MercadoPagoClient:
    return MercadoPagoClient(
        access_token="APP_USR-test",
        api_url="https://api.mercadopago.test/",
        timeout_seconds=2.0,
        integrator_id="dev_123",
    )


class TestPreferenceBuilder:

    @pytest.mark.unit
    def test_external_reference(self):
        assert build_external_reference("buyer@example.com", "abc") == "buyer@example.com|abc"

    @pytest.mark.unit
    def test_preference_body(self):
        preference = build_order_preference(
            order_id="order-1",
            customer_email="buyer@example.com",
            customer_name=None,
            items=[{"title": "Shirt", "quantity": "2", "unit_price": "1500.50"}],
            notification_url="https://shop.example.com/api/checkout/webhook",
            back_urls={"success": "https://shop.example.com/ok"},
        )

        assert preference["external_reference"] == "buyer@example.com|order-1"
        assert preference["items"] == [{
            "id": "0",
            "title": "Shirt",
            "quantity": 2,
            "unit_price": 1500.5,
            "currency_id": "ARS",
        }]
        assert preference["payer"] == {"email": "buyer@example.com", "name": ""}
        assert preference["auto_return"] == "approved"
        assert preference["notification_url"].endswith("/api/checkout/webhook")


class TestGetPayment:

    @pytest.mark.asyncio
    async def test_success(self, client):
        payment = {"id": 123, "status": "approved", "external_reference": "a@b.c|order-1"}
        with _mock_http(_response(200, payment)) as http:
            result = await client.get_payment("123")

        assert result == payment
        args, kwargs = http.request.call_args
        assert args == ("GET", "https://api.mercadopago.test/v1/payments/123")
        assert kwargs["headers"]["Authorization"] == "Bearer APP_USR-test"
        assert kwargs["headers"]["x-integrator-id"] == "dev_123"

    @pytest.mark.asyncio
    async def test_missing_token(self):
        client = MercadoPagoClient(access_token="")
        with _mock_http(_response(200, {})) as http:
            with pytest.raises(PaymentProviderError):
                await client.get_payment("123")
        http.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_timeout(self, client):
        with _mock_http(error=httpx.ReadTimeout("slow")):
            with pytest.raises(ServiceTimeoutError) as exc_info:
                await client.get_payment("123")
        assert exc_info.value.details["timeout_seconds"] == 2.0

    @pytest.mark.asyncio
    async def test_network_error(self, client):
        with _mock_http(error=httpx.ConnectError("refused")):
            with pytest.raises(PaymentProviderError) as exc_info:
                await client.get_payment("123")
        assert exc_info.value.details["network_error"] is True

    @pytest.mark.asyncio
    async def test_non_2xx(self, client):
        with _mock_http(_response(404, text='{"message":"not found"}')):
            with pytest.raises(PaymentProviderError) as exc_info:
                await client.get_payment("123")

        assert exc_info.value.details["status_code"] == 404
        assert "not found" in exc_info.value.details["response_text"]

    @pytest.mark.asyncio
    async def test_non_json_body(self, client):
        response = _response(200)
        response.json.side_effect = ValueError("no json")
        with _mock_http(response):
            with pytest.raises(PaymentProviderError):
                await client.get_payment("123")

    @pytest.mark.asyncio
    async def test_repeated_failures_open_circuit(self, client):
        with _mock_http(error=httpx.ReadTimeout("slow")) as http:
            for _ in range(5):
                with pytest.raises(ServiceTimeoutError):
                    await client.get_payment("123")

            assert get_mercadopago_circuit_breaker().state == CircuitState.OPEN
            with pytest.raises(CircuitBreakerOpenError):
                await client.get_payment("123")

        assert http.request.await_count == 5

    @pytest.mark.asyncio
    async def test_client_errors_leave_circuit_closed(self, client):
        with _mock_http(_response(404, text='{"message":"payment not found"}')) as http:
            for _ in range(8):
                with pytest.raises(PaymentProviderError) as exc_info:
                    await client.get_payment("unknown")
                assert exc_info.value.details["status_code"] == 404

        assert get_mercadopago_circuit_breaker().state == CircuitState.CLOSED
        assert http.request.await_count == 8

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [429, 500, 503])
    async def test_server_errors_open_circuit(self, client, status_code):
        with _mock_http(_response(status_code, text="unavailable")):
            for _ in range(5):
                with pytest.raises(PaymentProviderError):
                    await client.get_payment("123")

            with pytest.raises(CircuitBreakerOpenError):
                await client.get_payment("123")


class TestCreatePreference:

    @pytest.mark.asyncio
    async def test_posts_preference(self, client):
        created = {"id": "pref-1", "init_point": "https://mp.test/checkout/pref-1"}
        with _mock_http(_response(201, created)) as http:
            result = await client.create_preference({"external_reference": "a|b", "items": []})

        assert result == created
        args, kwargs = http.request.call_args
        assert args == ("POST", "https://api.mercadopago.test/checkout/preferences")
        assert kwargs["json"] == {"external_reference": "a|b", "items": []}

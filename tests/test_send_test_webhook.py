"""
Tests for scripts/send_test_webhook.py
"""
from unittest.mock import MagicMock, patch

import httpx
import pytest

from app.domain.services.webhook_security import validate_webhook_signature
from tests.conftest import TEST_WEBHOOK_SECRET


def _response(status_code: int, body: dict | None = None) -> httpx.Response:
    request = httpx.Request("GET", "http://127.0.0.1:8000/")
    return httpx.Response(status_code, json=body or {}, request=request)


class TestSendTestWebhook:

    @pytest.mark.unit
    def test_posts_signed_notification(self, monkeypatch):
        from scripts import send_test_webhook

        monkeypatch.setenv("BASE_URL", "http://127.0.0.1:9000/")
        monkeypatch.setenv("PAYMENT_ID", "777")

        client = MagicMock()
        client.get.return_value = _response(200, {"status": "healthy"})
        client.post.return_value = _response(200, {"status": "processed"})

        with patch.object(send_test_webhook, "setup_logging"), \
             patch("httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value = client
            send_test_webhook.main()

        client.get.assert_called_once_with("http://127.0.0.1:9000/health")
        args, kwargs = client.post.call_args
        assert args[0] == "http://127.0.0.1:9000/api/checkout/webhook"
        assert kwargs["json"] == {"id": "777", "type": "payment"}
        assert validate_webhook_signature(kwargs["headers"], "777", secret=TEST_WEBHOOK_SECRET)

    @pytest.mark.unit
    def test_unexpected_status_raises(self):
        from scripts.send_test_webhook import _check_status

        with pytest.raises(RuntimeError, match="Unexpected status 401"):
            _check_status(_response(401))

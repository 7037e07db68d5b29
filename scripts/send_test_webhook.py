"""
Send a signed Mercado Pago style notification to a running instance.

    BASE_URL=http://127.0.0.1:8000 PAYMENT_ID=123456 python scripts/send_test_webhook.py

The signature is computed with MERCADOPAGO_WEBHOOK_SECRET, so the request
passes signature validation; IP validation accepts localhost outside
production. Also checks /health first.
"""
from __future__ import annotations

import os
import time

import httpx

from app.core.config import settings
from app.core.logging import get_logger, setup_logging
from app.domain.services.webhook_security import SIGNATURE_HEADER, compute_signature

logger = get_logger(__name__)


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _check_status(resp: httpx.Response, expected_family: int = 2) -> None:
    family = resp.status_code // 100
    if family != expected_family:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} for {resp.request.method} {resp.request.url}. "
            f"Body: {(resp.text or '')[:500]}"
        )


def main() -> None:
    setup_logging(level="INFO", json_format=False, app_name="payment-webhooks-smoke")

    base_url = _base_url()
    payment_id = os.environ.get("PAYMENT_ID", "1234567890")
    timeout = float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))

    if not settings.MERCADOPAGO_WEBHOOK_SECRET:
        raise SystemExit("MERCADOPAGO_WEBHOOK_SECRET must be set to sign the notification")

    ts = int(time.time())
    signature = compute_signature(settings.MERCADOPAGO_WEBHOOK_SECRET, payment_id, ts)

    with httpx.Client(timeout=timeout) as client:
        resp = client.get(f"{base_url}/health")
        _check_status(resp)

        webhook_url = f"{base_url}/api/checkout/webhook"
        logger.info("Posting signed notification", extra_data={"url": webhook_url, "payment_id": payment_id})
        resp = client.post(
            webhook_url,
            json={"id": payment_id, "type": "payment"},
            headers={SIGNATURE_HEADER: f"ts={ts},v1={signature}"},
        )
        _check_status(resp)
        logger.info("Webhook accepted", extra_data={"response": resp.json()})


if __name__ == "__main__":
    main()

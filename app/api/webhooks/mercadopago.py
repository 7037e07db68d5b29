"""
Mercado Pago Webhook Handler

Authenticates the notification, stores it in the webhook queue and makes one
immediate, best-effort processing attempt. Whatever happens during that
attempt, the provider gets a 200 once the event is durably queued; retries
are driven by the queue from then on.
"""
import json
import time
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.core.exceptions import (
    AppException,
    AuthenticationError,
    ErrorCode,
    ForbiddenError,
    ValidationException,
)
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.webhook_queue import WebhookQueueStatus
from app.domain.services.queue_processor import WebhookQueueProcessor
from app.domain.services.webhook_security import (
    extract_client_ip,
    validate_provider_ip,
    validate_webhook_signature,
)

logger = get_logger(__name__)

router = APIRouter()

PAYMENT_EVENT_TYPE = "payment"


@dataclass(frozen=True)
class PaymentNotification:
    payment_id: str
    event_type: str


def normalize_notification(body: Any) -> PaymentNotification | None:
    """
    Accept both notification shapes:

    - current: ``{"id": "123", "type": "payment"}``
    - legacy:  ``{"resource": "123" | "https://.../123", "topic": "payment"}``
    """
    if not isinstance(body, dict):
        return None

    if body.get("id") and body.get("type"):
        return PaymentNotification(payment_id=str(body["id"]), event_type=str(body["type"]))

    resource = body.get("resource")
    topic = body.get("topic")
    if resource and topic:
        resource = str(resource).rstrip("/")
        payment_id = resource.rsplit("/", 1)[-1] if "/" in resource else resource
        if not payment_id:
            return None
        return PaymentNotification(payment_id=payment_id, event_type=str(topic))

    return None


def get_processor(db: AsyncSession = Depends(get_db)) -> WebhookQueueProcessor:
    return WebhookQueueProcessor.create(db)


def _check_origin(request: Request, payment_id: str) -> None:
    client_ip = extract_client_ip(
        request.headers,
        fallback=request.client.host if request.client else None,
    )
    skip_ip = settings.WEBHOOK_SKIP_IP_VALIDATION and not settings.is_production
    if skip_ip:
        logger.warning("Webhook IP validation skipped", extra_data={"client_ip": client_ip})
    elif not validate_provider_ip(
        client_ip,
        allowed_ranges=settings.webhook_allowed_networks,
        allow_localhost=not settings.is_production,
    ):
        logger.warning(
            "Webhook rejected: IP not allowed",
            extra_data={"client_ip": client_ip, "payment_id": payment_id},
        )
        raise ForbiddenError("Unauthorized origin", error_code=ErrorCode.IP_NOT_ALLOWED)

    skip_signature = settings.WEBHOOK_SKIP_SIGNATURE_VALIDATION and not settings.is_production
    if skip_signature:
        logger.warning("Webhook signature validation skipped", extra_data={"payment_id": payment_id})
    elif not validate_webhook_signature(
        request.headers,
        payment_id,
        secret=settings.MERCADOPAGO_WEBHOOK_SECRET,
        max_age_seconds=settings.WEBHOOK_SIGNATURE_MAX_AGE_SECONDS,
    ):
        logger.warning(
            "Webhook rejected: invalid signature",
            extra_data={"client_ip": client_ip, "payment_id": payment_id},
        )
        raise AuthenticationError("Invalid signature", error_code=ErrorCode.INVALID_SIGNATURE)


@router.post("/webhook")
async def mercadopago_webhook(
    request: Request,
    processor: WebhookQueueProcessor = Depends(get_processor),
) -> dict:
    started = time.monotonic()

    raw_body = await request.body()
    try:
        body = json.loads(raw_body or b"null")
    except ValueError:
        raise ValidationException(
            "Invalid JSON body", error_code=ErrorCode.INVALID_WEBHOOK_PAYLOAD
        )

    notification = normalize_notification(body)
    if notification is None:
        logger.warning("Unknown webhook format", extra_data={"keys": sorted(body) if isinstance(body, dict) else None})
        raise ValidationException(
            "Unknown webhook format", error_code=ErrorCode.INVALID_WEBHOOK_PAYLOAD
        )

    _check_origin(request, notification.payment_id)

    if notification.event_type != PAYMENT_EVENT_TYPE:
        logger.info(
            "Ignoring non-payment webhook",
            extra_data={"event_type": notification.event_type, "payment_id": notification.payment_id},
        )
        return {"received": True, "status": "ignored", "event_type": notification.event_type}

    try:
        queue_id = await processor.queue_service.enqueue_event(
            notification.payment_id, notification.event_type, body
        )
    except Exception as e:
        logger.error(
            "Failed to enqueue webhook",
            extra_data={"payment_id": notification.payment_id, "error": str(e)},
            exc_info=True,
        )
        raise AppException("Failed to enqueue webhook", status_code=500)

    status = "queued"
    try:
        event = await processor.queue_service.get_event(queue_id)
        if event is not None and _can_process_now(event):
            if await processor.process_event(event):
                status = "processed"
    except Exception as e:
        # The event stays queued; reconciliation picks it up
        logger.error(
            "Immediate processing failed",
            extra_data={"queue_id": queue_id, "payment_id": notification.payment_id, "error": str(e)},
            exc_info=True,
        )

    duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "Webhook accepted",
        extra_data={
            "queue_id": queue_id,
            "payment_id": notification.payment_id,
            "status": status,
            "duration_ms": duration_ms,
        },
    )
    return {
        "received": True,
        "queue_id": queue_id,
        "payment_id": notification.payment_id,
        "status": status,
        "duration_ms": duration_ms,
    }


def _can_process_now(event) -> bool:
    """False while another pass holds the event or its retry schedule says wait"""
    if event.status == WebhookQueueStatus.PROCESSING:
        return False
    if (event.retry_count or 0) >= (event.max_retries or 0):
        return False
    if event.status == WebhookQueueStatus.FAILED and event.next_retry_at is not None:
        return event.next_retry_at <= utcnow()
    return True

"""
Webhook Queue Processor

Drives queued payment notifications to completion:

1. claim the event (``processing``); a row another pass holds is skipped
2. resolve payment facts (stored payload, else a fresh fetch from Mercado Pago)
3. apply them idempotently to the order (payment log + order status)
4. on a fresh transition into ``approved``: stock, cart and confirmation email
5. mark ``completed``

Any failure before step 5 consumes one unit of the event's retry budget. The
event is rescheduled with exponential backoff, or written to the dead-letter
store once the budget is exhausted.
"""
import time
import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.core.exceptions import AppException, ErrorCode, EventValidationError
from app.core.logging import get_logger
from app.db.models.dead_letter import DeadLetterStatus, WebhookDeadLetter
from app.db.models.order import OrderStatus, TERMINAL_ORDER_STATUSES
from app.db.models.webhook_queue import WebhookQueueEvent, WebhookQueueStatus
from app.domain.services.email_service import EmailDispatcher
from app.domain.services.mercadopago_client import MercadoPagoClient
from app.domain.services.order_repository import OrderRepository
from app.domain.services.webhook_queue_service import WebhookQueueService

logger = get_logger(__name__)

_MAX_ERROR_LENGTH = 2000

_CLAIMABLE_STATUSES = (
    WebhookQueueStatus.PENDING,
    WebhookQueueStatus.FAILED,
    WebhookQueueStatus.COMPLETED,
)

_PAYMENT_TO_ORDER_STATUS = {
    "approved": OrderStatus.APPROVED,
    "pending": OrderStatus.PENDING,
    "rejected": OrderStatus.REJECTED,
    "cancelled": OrderStatus.REJECTED,
}


def extract_order_id(external_reference: str | None) -> str:
    """
    Order id is the last ``|`` segment of the external reference
    (``email|uuid`` → ``uuid``; a bare ``uuid`` is returned as is).
    """
    if not external_reference:
        raise EventValidationError("Payment has no external_reference")

    order_id = external_reference.split("|")[-1].strip()
    if not order_id:
        raise EventValidationError(
            "external_reference does not contain an order id",
            details={"external_reference": external_reference},
        )
    return order_id


def map_payment_status_to_order_status(payment_status: str | None) -> OrderStatus:
    return _PAYMENT_TO_ORDER_STATUS.get(payment_status or "", OrderStatus.PENDING)


def calculate_backoff_minutes(retry_count: int, max_delay_minutes: int | None = None) -> int:
    """1, 2, 4, 8, 16, 32, 32, ... minutes for retry_count 1, 2, 3, ..."""
    cap = max_delay_minutes if max_delay_minutes is not None else settings.WEBHOOK_RETRY_MAX_DELAY_MINUTES
    exponent = max(retry_count, 1) - 1
    if exponent >= cap.bit_length():
        return cap
    return min(1 << exponent, cap)


def calculate_next_retry_at(retry_count: int, now: datetime | None = None) -> datetime:
    return (now or utcnow()) + timedelta(minutes=calculate_backoff_minutes(retry_count))


@dataclass(frozen=True)
class QueueEventData:
    """
    Plain snapshot of a queue row.

    The processor rolls the session back on failures, which expires ORM
    instances; working from a snapshot keeps attribute access free of I/O.
    """

    id: int
    payment_id: str
    event_type: str
    webhook_data: dict
    retry_count: int
    max_retries: int

    @classmethod
    def from_model(cls, event: WebhookQueueEvent) -> "QueueEventData":
        return cls(
            id=event.id,
            payment_id=event.payment_id,
            event_type=event.event_type,
            webhook_data=dict(event.webhook_data or {}),
            retry_count=event.retry_count or 0,
            max_retries=event.max_retries or settings.WEBHOOK_QUEUE_MAX_RETRIES,
        )


@dataclass(frozen=True)
class PaymentFacts:
    external_reference: str | None
    status: str | None
    status_detail: str | None
    raw: dict


class ProcessOutcome(str, Enum):
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    DEAD_LETTER_WRITE_FAILED = "dead_letter_write_failed"
    SKIPPED = "skipped"


@dataclass
class BatchResult:
    processed: int = 0
    failed: int = 0
    dead_lettered: int = 0
    dead_letter_write_failures: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "dead_lettered": self.dead_lettered,
            "dead_letter_write_failures": self.dead_letter_write_failures,
        }


class WebhookQueueProcessor:
    def __init__(
        self,
        db: AsyncSession,
        repository: OrderRepository,
        payment_client: MercadoPagoClient,
        email_dispatcher: EmailDispatcher | None,
        queue_service: WebhookQueueService,
    ):
        self.db = db
        self.repository = repository
        self.payment_client = payment_client
        self.email_dispatcher = email_dispatcher
        self.queue_service = queue_service

    @classmethod
    def create(cls, db: AsyncSession) -> "WebhookQueueProcessor":
        """Processor wired with the production collaborators"""
        repository = OrderRepository(db)
        return cls(
            db=db,
            repository=repository,
            payment_client=MercadoPagoClient(),
            email_dispatcher=EmailDispatcher(repository),
            queue_service=WebhookQueueService(db),
        )

    # ------------------------------------------------------------------
    # Single event
    # ------------------------------------------------------------------

    async def process_event(self, event: WebhookQueueEvent | QueueEventData) -> bool:
        """True when the event reached ``completed``"""
        outcome = await self.handle_event(event)
        return outcome == ProcessOutcome.COMPLETED

    async def handle_event(self, event: WebhookQueueEvent | QueueEventData) -> ProcessOutcome:
        data = event if isinstance(event, QueueEventData) else QueueEventData.from_model(event)
        started = time.monotonic()

        try:
            if not await self._claim_event(data):
                logger.info(
                    "Webhook event already claimed, skipping",
                    extra_data={"queue_id": data.id, "payment_id": data.payment_id},
                )
                return ProcessOutcome.SKIPPED

            facts = await self._resolve_payment_facts(data)
            order_id = extract_order_id(facts.external_reference)
            approved_now = await self._apply_payment(data, facts, order_id)

            if approved_now:
                await self._run_side_effects(order_id, data.payment_id)

            await self._update_event(
                data.id,
                status=WebhookQueueStatus.COMPLETED,
                completed_at=utcnow(),
                last_error=None,
            )
        except Exception as exc:
            await self.db.rollback()
            return await self._handle_failure(data, exc)

        logger.info(
            "Webhook event processed",
            extra_data={
                "queue_id": data.id,
                "payment_id": data.payment_id,
                "order_id": order_id,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return ProcessOutcome.COMPLETED

    async def _update_event(self, queue_id: int, **values: Any) -> None:
        await self.db.execute(
            update(WebhookQueueEvent).where(WebhookQueueEvent.id == queue_id).values(**values)
        )
        await self.db.commit()

    async def _claim_event(self, data: QueueEventData) -> bool:
        """
        Move the row to ``processing`` only if no other pass holds it and its
        retry count still matches the snapshot. False means another pass got
        there first.
        """
        result = await self.db.execute(
            update(WebhookQueueEvent)
            .where(
                WebhookQueueEvent.id == data.id,
                WebhookQueueEvent.status.in_(_CLAIMABLE_STATUSES),
                WebhookQueueEvent.retry_count == data.retry_count,
            )
            .values(status=WebhookQueueStatus.PROCESSING, last_attempt_at=utcnow())
        )
        await self.db.commit()
        return result.rowcount == 1

    async def _resolve_payment_facts(self, data: QueueEventData) -> PaymentFacts:
        payload = data.webhook_data or {}
        external_reference = payload.get("external_reference")
        status = payload.get("status")

        if external_reference and status:
            return PaymentFacts(
                external_reference=str(external_reference),
                status=str(status),
                status_detail=payload.get("status_detail"),
                raw=payload,
            )

        payment = await self.payment_client.get_payment(data.payment_id)
        external_reference = payment.get("external_reference") or external_reference
        if not external_reference:
            raise EventValidationError(
                f"No external_reference found in payment {data.payment_id}",
                payment_id=data.payment_id,
            )

        return PaymentFacts(
            external_reference=str(external_reference),
            status=payment.get("status") or status,
            status_detail=payment.get("status_detail"),
            raw=payment,
        )

    async def _apply_payment(
        self,
        data: QueueEventData,
        facts: PaymentFacts,
        order_id: str,
    ) -> bool:
        """
        Write the payment log and order status if they differ from the
        payment. Returns True only when this call moved the order into
        ``approved``.
        """
        target = map_payment_status_to_order_status(facts.status)
        raw_status = facts.status or "unknown"

        order = await self.repository.get_order_by_id(order_id)
        if order is None:
            raise EventValidationError(
                f"Order not found: {order_id}",
                payment_id=data.payment_id,
                error_code=ErrorCode.ORDER_NOT_FOUND,
                details={"order_id": order_id},
            )
        current = OrderStatus(order.status)
        current_payment_id = order.payment_id

        latest_log = await self.repository.get_payment_log_by_payment_id(data.payment_id)
        log_matches = latest_log is not None and latest_log.status == raw_status
        order_matches = current == target and current_payment_id == data.payment_id

        if log_matches and order_matches:
            logger.info(
                "Payment already applied, nothing to do",
                extra_data={"payment_id": data.payment_id, "order_id": order_id, "status": raw_status},
            )
            return False

        if current in TERMINAL_ORDER_STATUSES and target == OrderStatus.PENDING:
            logger.warning(
                "Ignoring stale payment status for finalized order",
                extra_data={
                    "payment_id": data.payment_id,
                    "order_id": order_id,
                    "order_status": current.value,
                    "payment_status": raw_status,
                },
            )
            return False

        if not log_matches:
            await self.repository.save_payment_log(
                order_id=order_id,
                payment_id=data.payment_id,
                status=raw_status,
                status_detail=facts.status_detail,
                event_type=data.event_type,
                response_body=facts.raw,
            )

        if not order_matches:
            # Only one pass may move the order into approved; a late
            # "pending" never overwrites a final status
            if target == OrderStatus.APPROVED and current != OrderStatus.APPROVED:
                guard = (OrderStatus.APPROVED,)
            elif target == OrderStatus.PENDING:
                guard = tuple(TERMINAL_ORDER_STATUSES)
            else:
                guard = None

            changed = await self.repository.update_order_status(
                order_id, target, data.payment_id, unless_status_in=guard
            )
            if not changed:
                logger.info(
                    "Order changed by another pass, status left as is",
                    extra_data={"order_id": order_id, "payment_id": data.payment_id, "target": target.value},
                )
                return False

            logger.info(
                "Order status updated from payment",
                extra_data={
                    "order_id": order_id,
                    "payment_id": data.payment_id,
                    "from_status": current.value,
                    "to_status": target.value,
                },
            )
            return target == OrderStatus.APPROVED and current != OrderStatus.APPROVED

        return False

    async def _run_side_effects(self, order_id: str, payment_id: str) -> None:
        """Each effect fails on its own; a failure is logged and never propagates"""

        async def clear_cart() -> None:
            cart_id = await self.repository.get_cart_id_by_order_id(order_id)
            if not cart_id:
                return
            await self.repository.clear_cart(cart_id)
            await self.repository.update_cart_total(cart_id)

        async def send_email() -> None:
            if self.email_dispatcher is None:
                return
            await self.email_dispatcher.send_order_confirmation_email(order_id)

        effects = (
            ("decrement_stock", lambda: self.repository.decrement_stock_for_order(order_id)),
            ("clear_cart", clear_cart),
            ("send_confirmation_email", send_email),
        )
        for name, effect in effects:
            try:
                await effect()
            except Exception as exc:
                await self.db.rollback()
                logger.error(
                    f"Side effect {name} failed",
                    extra_data={
                        "side_effect": name,
                        "order_id": order_id,
                        "payment_id": payment_id,
                        "error": str(exc),
                    },
                    exc_info=True,
                )

    # ------------------------------------------------------------------
    # Failure path
    # ------------------------------------------------------------------

    async def _handle_failure(self, data: QueueEventData, exc: Exception) -> ProcessOutcome:
        retry_count = data.retry_count + 1
        error_msg = (str(exc) or type(exc).__name__)[:_MAX_ERROR_LENGTH]

        logger.error(
            "Webhook event processing failed",
            extra_data={
                "queue_id": data.id,
                "payment_id": data.payment_id,
                "error": error_msg,
                "error_type": type(exc).__name__,
                "retry_count": retry_count,
                "max_retries": data.max_retries,
            },
        )

        try:
            if retry_count >= data.max_retries:
                if await self._move_to_dead_letter(data, retry_count, error_msg, exc):
                    return ProcessOutcome.DEAD_LETTERED
                # Keep the budget one short so the event is picked up again
                await self._schedule_retry(data.id, data.retry_count, error_msg)
                return ProcessOutcome.DEAD_LETTER_WRITE_FAILED

            await self._schedule_retry(data.id, retry_count, error_msg)
        except Exception as write_exc:
            # The row stays in processing; the stale-event reset recovers it
            await self.db.rollback()
            logger.error(
                "Could not record failure for webhook event",
                extra_data={"queue_id": data.id, "error": str(write_exc)},
                exc_info=True,
            )
        return ProcessOutcome.RETRY_SCHEDULED

    async def _schedule_retry(self, queue_id: int, retry_count: int, error_msg: str) -> None:
        await self._update_event(
            queue_id,
            status=WebhookQueueStatus.FAILED,
            retry_count=retry_count,
            last_error=error_msg,
            next_retry_at=calculate_next_retry_at(max(retry_count, 1)),
        )

    @staticmethod
    def _error_details(exc: Exception) -> dict:
        details: dict[str, Any] = {
            "type": type(exc).__name__,
            "message": str(exc),
            "traceback": "".join(traceback.format_exception(exc))[-4000:],
        }
        if isinstance(exc, AppException):
            details["error_code"] = exc.error_code.value
            details["details"] = exc.details
        return details

    async def _move_to_dead_letter(
        self,
        data: QueueEventData,
        total_attempts: int,
        error_msg: str,
        exc: Exception,
    ) -> bool:
        """
        Insert the dead-letter row and exhaust the event in one commit.

        Returns False after ``WEBHOOK_DEAD_LETTER_WRITE_ATTEMPTS`` failed writes.
        """
        exhausted_count = max(total_attempts, data.max_retries)
        attempts = settings.WEBHOOK_DEAD_LETTER_WRITE_ATTEMPTS
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                self.db.add(
                    WebhookDeadLetter(
                        webhook_queue_id=data.id,
                        payment_id=data.payment_id,
                        event_type=data.event_type,
                        webhook_data=data.webhook_data,
                        total_attempts=total_attempts,
                        final_error=error_msg,
                        error_details=self._error_details(exc),
                        status=DeadLetterStatus.PENDING,
                    )
                )
                await self.db.execute(
                    update(WebhookQueueEvent)
                    .where(WebhookQueueEvent.id == data.id)
                    .values(
                        status=WebhookQueueStatus.FAILED,
                        retry_count=exhausted_count,
                        last_error=error_msg,
                    )
                )
                await self.db.commit()
            except IntegrityError:
                # A dead-letter row for this event already exists
                await self.db.rollback()
                await self._update_event(
                    data.id,
                    status=WebhookQueueStatus.FAILED,
                    retry_count=exhausted_count,
                    last_error=error_msg,
                )
                return True
            except Exception as write_exc:
                await self.db.rollback()
                last_error = write_exc
                logger.warning(
                    "Dead-letter write failed",
                    extra_data={
                        "queue_id": data.id,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "error": str(write_exc),
                    },
                )
                continue

            logger.error(
                "Webhook event moved to dead letter queue",
                extra_data={
                    "queue_id": data.id,
                    "payment_id": data.payment_id,
                    "total_attempts": total_attempts,
                    "final_error": error_msg,
                },
            )
            return True

        logger.critical(
            "Dead-letter write failed after all attempts",
            extra_data={
                "alert": "dead_letter_write_failed",
                "queue_id": data.id,
                "payment_id": data.payment_id,
                "attempts": attempts,
                "error": str(last_error),
            },
        )
        return False

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def get_ready_events(self, limit: int | None = None) -> list[QueueEventData]:
        """Pending/failed events that are due and still have retry budget"""
        now = utcnow()
        result = await self.db.execute(
            select(WebhookQueueEvent)
            .where(
                WebhookQueueEvent.status.in_([WebhookQueueStatus.PENDING, WebhookQueueStatus.FAILED]),
                or_(WebhookQueueEvent.next_retry_at.is_(None), WebhookQueueEvent.next_retry_at <= now),
                WebhookQueueEvent.retry_count < WebhookQueueEvent.max_retries,
            )
            .order_by(WebhookQueueEvent.retry_count.asc(), WebhookQueueEvent.created_at.asc())
            .limit(limit or settings.WEBHOOK_QUEUE_BATCH_SIZE)
            .execution_options(populate_existing=True)
        )
        return [QueueEventData.from_model(event) for event in result.scalars().all()]

    async def process_pending_events(self, limit: int | None = None) -> BatchResult:
        events = await self.get_ready_events(limit)
        batch = BatchResult()

        for data in events:
            outcome = await self.handle_event(data)
            if outcome == ProcessOutcome.SKIPPED:
                continue
            if outcome == ProcessOutcome.COMPLETED:
                batch.processed += 1
                continue
            batch.failed += 1
            if outcome == ProcessOutcome.DEAD_LETTERED:
                batch.dead_lettered += 1
            elif outcome == ProcessOutcome.DEAD_LETTER_WRITE_FAILED:
                batch.dead_letter_write_failures += 1

        logger.info("Webhook batch processed", extra_data={"selected": len(events), **batch.to_dict()})
        return batch

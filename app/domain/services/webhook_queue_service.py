"""
Webhook Queue Service - durable enqueue plus the read/maintenance operations
used by the operator endpoints and the reconciliation job.
"""
from datetime import timedelta
from typing import List

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.core.exceptions import NotFoundException
from app.core.logging import get_logger
from app.db.models.dead_letter import DeadLetterStatus, WebhookDeadLetter
from app.db.models.reconciliation_log import ReconciliationLog
from app.db.models.webhook_queue import WebhookQueueEvent, WebhookQueueStatus

logger = get_logger(__name__)


class WebhookQueueService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def enqueue_event(
        self,
        payment_id: str,
        event_type: str,
        webhook_data: dict,
    ) -> int:
        """
        Insert a pending event and return its id.

        A second notification for the same (payment_id, event_type) returns
        the id of the row already queued. Any other store error propagates.
        """
        now = utcnow()
        event = WebhookQueueEvent(
            payment_id=payment_id,
            event_type=event_type,
            webhook_data=webhook_data,
            status=WebhookQueueStatus.PENDING,
            retry_count=0,
            max_retries=settings.WEBHOOK_QUEUE_MAX_RETRIES,
            next_retry_at=now,
            created_at=now,
        )
        self.db.add(event)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing_id = await self._find_event_id(payment_id, event_type)
            if existing_id is None:
                raise
            logger.info(
                "Webhook event already queued",
                extra_data={"payment_id": payment_id, "queue_id": existing_id},
            )
            return existing_id

        logger.info(
            "Webhook event enqueued",
            extra_data={"payment_id": payment_id, "event_type": event_type, "queue_id": event.id},
        )
        return event.id

    async def _find_event_id(self, payment_id: str, event_type: str) -> int | None:
        result = await self.db.execute(
            select(WebhookQueueEvent.id).where(
                WebhookQueueEvent.payment_id == payment_id,
                WebhookQueueEvent.event_type == event_type,
            )
        )
        return result.scalar_one_or_none()

    async def get_event(self, queue_id: int) -> WebhookQueueEvent | None:
        result = await self.db.execute(
            select(WebhookQueueEvent)
            .where(WebhookQueueEvent.id == queue_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_queue_stats(self) -> dict[str, int]:
        result = await self.db.execute(
            select(WebhookQueueEvent.status, func.count(WebhookQueueEvent.id))
            .group_by(WebhookQueueEvent.status)
        )
        stats = {status.value: 0 for status in WebhookQueueStatus}
        for status, count in result.all():
            stats[WebhookQueueStatus(status).value] = count
        stats["total"] = sum(stats.values())
        return stats

    async def get_dead_letter_stats(self) -> dict[str, int]:
        result = await self.db.execute(
            select(WebhookDeadLetter.status, func.count(WebhookDeadLetter.id))
            .group_by(WebhookDeadLetter.status)
        )
        stats = {status.value: 0 for status in DeadLetterStatus}
        for status, count in result.all():
            stats[DeadLetterStatus(status).value] = count
        stats["total"] = sum(stats.values())
        return stats

    async def list_dead_letters(
        self,
        status: DeadLetterStatus | None = None,
        limit: int = 50,
    ) -> List[WebhookDeadLetter]:
        query = select(WebhookDeadLetter).order_by(WebhookDeadLetter.created_at.desc()).limit(limit)
        if status is not None:
            query = query.where(WebhookDeadLetter.status == status)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def mark_dead_letter_reviewed(
        self,
        dead_letter_id: int,
        reviewed_by: str,
        notes: str | None = None,
    ) -> WebhookDeadLetter:
        result = await self.db.execute(
            update(WebhookDeadLetter)
            .where(WebhookDeadLetter.id == dead_letter_id)
            .values(
                status=DeadLetterStatus.REVIEWED,
                reviewed_at=utcnow(),
                reviewed_by=reviewed_by,
                review_notes=notes,
            )
        )
        if result.rowcount == 0:
            await self.db.rollback()
            raise NotFoundException("Dead letter", dead_letter_id)
        await self.db.commit()

        dead_letter = await self.db.get(WebhookDeadLetter, dead_letter_id, populate_existing=True)
        logger.info(
            "Dead letter marked as reviewed",
            extra_data={"dead_letter_id": dead_letter_id, "reviewed_by": reviewed_by},
        )
        return dead_letter

    async def cleanup_completed_events(self, older_than_days: int | None = None) -> int:
        """Delete completed events whose completed_at is older than the retention window"""
        days = older_than_days if older_than_days is not None else settings.WEBHOOK_COMPLETED_RETENTION_DAYS
        threshold = utcnow() - timedelta(days=days)
        result = await self.db.execute(
            delete(WebhookQueueEvent).where(
                WebhookQueueEvent.status == WebhookQueueStatus.COMPLETED,
                WebhookQueueEvent.completed_at < threshold,
            )
        )
        await self.db.commit()
        return result.rowcount or 0

    async def reset_stale_processing_events(self, older_than_minutes: int | None = None) -> int:
        """
        Events left in ``processing`` by a crashed worker go back to ``failed``
        and become ready immediately. The retry count is left unchanged.
        """
        minutes = (
            older_than_minutes if older_than_minutes is not None
            else settings.WEBHOOK_STALE_PROCESSING_MINUTES
        )
        now = utcnow()
        threshold = now - timedelta(minutes=minutes)
        result = await self.db.execute(
            update(WebhookQueueEvent)
            .where(
                WebhookQueueEvent.status == WebhookQueueStatus.PROCESSING,
                WebhookQueueEvent.last_attempt_at < threshold,
            )
            .values(
                status=WebhookQueueStatus.FAILED,
                next_retry_at=now,
                last_error="Processing interrupted (stale)",
            )
        )
        await self.db.commit()
        reset = result.rowcount or 0
        if reset:
            logger.warning(
                "Reset stale processing events",
                extra_data={"count": reset, "older_than_minutes": minutes},
            )
        return reset

    async def get_recent_reconciliation_logs(self, limit: int = 5) -> List[ReconciliationLog]:
        result = await self.db.execute(
            select(ReconciliationLog)
            .order_by(ReconciliationLog.started_at.desc(), ReconciliationLog.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

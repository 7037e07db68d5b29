"""
Reconciliation Job

Periodic sweep over the webhook queue: recovers events stuck in
``processing``, retries everything that is due, prunes old completed events
and leaves a run record in ``webhook_reconciliation_logs``.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.logging import get_logger
from app.db.models.reconciliation_log import ReconciliationLog, ReconciliationStatus
from app.domain.services.queue_processor import WebhookQueueProcessor
from app.domain.services.webhook_queue_service import WebhookQueueService

logger = get_logger(__name__)


@dataclass
class ReconciliationResult:
    job_id: str
    started_at: datetime
    status: ReconciliationStatus = ReconciliationStatus.COMPLETED
    completed_at: datetime | None = None
    queue_processed: int = 0
    queue_failed: int = 0
    dead_letter_pending: int = 0
    dead_letter_write_failures: int = 0
    stale_reset: int = 0
    cleaned_up: int = 0
    duration_ms: int = 0
    error: str | None = None
    queue_stats: dict[str, int] = field(default_factory=dict)
    dead_letter_stats: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "queue_processed": self.queue_processed,
            "queue_failed": self.queue_failed,
            "dead_letter_pending": self.dead_letter_pending,
            "dead_letter_write_failures": self.dead_letter_write_failures,
            "stale_reset": self.stale_reset,
            "cleaned_up": self.cleaned_up,
            "error": self.error,
            "queue_stats": self.queue_stats,
            "dead_letter_stats": self.dead_letter_stats,
        }


class ReconciliationJob:
    def __init__(
        self,
        db: AsyncSession,
        processor: WebhookQueueProcessor,
        queue_service: WebhookQueueService,
    ):
        self.db = db
        self.processor = processor
        self.queue_service = queue_service
        self.result: ReconciliationResult | None = None

    @classmethod
    def create(cls, db: AsyncSession) -> "ReconciliationJob":
        processor = WebhookQueueProcessor.create(db)
        return cls(db, processor, processor.queue_service)

    async def run(self) -> ReconciliationResult:
        """
        Run one reconciliation pass.

        The run record is persisted whatever the outcome. If the pass itself
        raises, the record is written with status ``failed`` and the exception
        is re-raised; ``self.result`` still holds the record.
        """
        started = time.monotonic()
        result = ReconciliationResult(
            job_id=f"reconciliation_{int(time.time() * 1000)}",
            started_at=utcnow(),
        )
        self.result = result
        logger.info("Reconciliation started", extra_data={"job_id": result.job_id})

        try:
            result.stale_reset = await self.queue_service.reset_stale_processing_events()

            batch = await self.processor.process_pending_events()
            result.queue_processed = batch.processed
            result.queue_failed = batch.failed
            result.dead_letter_write_failures = batch.dead_letter_write_failures

            result.queue_stats = await self.queue_service.get_queue_stats()
            result.dead_letter_stats = await self.queue_service.get_dead_letter_stats()
            result.dead_letter_pending = result.dead_letter_stats.get("pending", 0)

            result.cleaned_up = await self.queue_service.cleanup_completed_events()

            result.status = (
                ReconciliationStatus.COMPLETED if result.queue_failed == 0
                else ReconciliationStatus.PARTIAL
            )
        except Exception as exc:
            await self.db.rollback()
            result.status = ReconciliationStatus.FAILED
            result.error = str(exc) or type(exc).__name__
            self._finish(result, started)
            logger.error(
                "Reconciliation failed",
                extra_data={"job_id": result.job_id, "error": result.error},
                exc_info=True,
            )
            await self._persist(result)
            raise

        self._finish(result, started)
        await self._persist(result)

        log = logger.warning if result.dead_letter_write_failures else logger.info
        log(
            "Reconciliation finished",
            extra_data={
                "job_id": result.job_id,
                "status": result.status.value,
                "queue_processed": result.queue_processed,
                "queue_failed": result.queue_failed,
                "dead_letter_pending": result.dead_letter_pending,
                "dead_letter_write_failures": result.dead_letter_write_failures,
                "stale_reset": result.stale_reset,
                "cleaned_up": result.cleaned_up,
                "duration_ms": result.duration_ms,
            },
        )
        return result

    @staticmethod
    def _finish(result: ReconciliationResult, started: float) -> None:
        result.completed_at = utcnow()
        result.duration_ms = int((time.monotonic() - started) * 1000)

    async def _persist(self, result: ReconciliationResult) -> None:
        """Write the run record; a failure here is logged and swallowed"""
        try:
            self.db.add(
                ReconciliationLog(
                    job_id=result.job_id,
                    started_at=result.started_at,
                    completed_at=result.completed_at,
                    status=result.status,
                    queue_processed=result.queue_processed,
                    queue_failed=result.queue_failed,
                    dead_letter_pending=result.dead_letter_pending,
                    dead_letter_write_failures=result.dead_letter_write_failures,
                    stale_reset=result.stale_reset,
                    cleaned_up=result.cleaned_up,
                    duration_ms=result.duration_ms,
                    error=result.error,
                )
            )
            await self.db.commit()
        except Exception as exc:
            await self.db.rollback()
            logger.error(
                "Failed to save reconciliation log",
                extra_data={"job_id": result.job_id, "error": str(exc)},
                exc_info=True,
            )

"""
Webhook operator endpoints: manual queue runs, reconciliation, status and
dead-letter review. Each family is protected by its own bearer token.
"""
import time
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.api.dependencies.admin_auth import (
    require_queue_processor_token,
    require_reconciliation_token,
    require_status_token,
)
from app.api.webhooks.mercadopago import get_processor
from app.core.circuit_breaker import get_email_circuit_breaker, get_mercadopago_circuit_breaker
from app.core.logging import get_logger
from app.db.models.dead_letter import DeadLetterStatus
from app.db.models.reconciliation_log import ReconciliationStatus
from app.domain.services.queue_processor import WebhookQueueProcessor
from app.domain.services.reconciliation_service import ReconciliationJob

logger = get_logger(__name__)

router = APIRouter()


# ─── Pydantic models ────────────────────────────────────────────────────────

class ReconciliationLogResponse(BaseModel):
    job_id: str
    started_at: datetime
    completed_at: datetime | None
    status: ReconciliationStatus
    queue_processed: int
    queue_failed: int
    dead_letter_pending: int
    dead_letter_write_failures: int
    stale_reset: int
    cleaned_up: int
    duration_ms: int | None
    error: str | None

    class Config:
        from_attributes = True


class DeadLetterResponse(BaseModel):
    id: int
    webhook_queue_id: int | None
    payment_id: str
    event_type: str
    total_attempts: int
    final_error: str
    status: DeadLetterStatus
    created_at: datetime | None
    reviewed_at: datetime | None
    reviewed_by: str | None
    review_notes: str | None

    class Config:
        from_attributes = True


class DeadLetterReviewRequest(BaseModel):
    reviewed_by: str = Field(min_length=1, max_length=255)
    notes: str | None = Field(default=None, max_length=5000)


# ─── Endpoints ──────────────────────────────────────────────────────────────

@router.post("/process-queue", dependencies=[Depends(require_queue_processor_token)])
async def process_queue(
    processor: WebhookQueueProcessor = Depends(get_processor),
) -> dict:
    """Run one processing batch and report queue stats before and after"""
    started = time.monotonic()
    queue_service = processor.queue_service

    before = {
        "queue": await queue_service.get_queue_stats(),
        "dead_letter": await queue_service.get_dead_letter_stats(),
    }
    batch = await processor.process_pending_events()
    after = {
        "queue": await queue_service.get_queue_stats(),
        "dead_letter": await queue_service.get_dead_letter_stats(),
    }

    duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "Manual queue run finished",
        extra_data={"duration_ms": duration_ms, **batch.to_dict()},
    )
    return {
        "success": True,
        **batch.to_dict(),
        "duration_ms": duration_ms,
        "stats": {"before": before, "after": after},
    }


@router.post("/reconcile", dependencies=[Depends(require_reconciliation_token)])
async def reconcile(
    processor: WebhookQueueProcessor = Depends(get_processor),
):
    job = ReconciliationJob(processor.db, processor, processor.queue_service)
    try:
        result = await job.run()
    except Exception as e:
        payload = job.result.to_dict() if job.result else {"error": str(e)}
        return JSONResponse(status_code=500, content={"success": False, **payload})
    return {"success": True, **result.to_dict()}


@router.get("/status", dependencies=[Depends(require_status_token)])
async def webhook_status(
    processor: WebhookQueueProcessor = Depends(get_processor),
) -> dict:
    queue_service = processor.queue_service
    logs = await queue_service.get_recent_reconciliation_logs(limit=5)
    return {
        "queue": await queue_service.get_queue_stats(),
        "dead_letter": await queue_service.get_dead_letter_stats(),
        "recent_reconciliations": [
            ReconciliationLogResponse.model_validate(log).model_dump(mode="json") for log in logs
        ],
        "circuit_breakers": {
            breaker.service_name: {
                "state": breaker.state.value,
                "retry_after_seconds": round(breaker.get_retry_after(), 1),
            }
            for breaker in (get_mercadopago_circuit_breaker(), get_email_circuit_breaker())
        },
    }


@router.get(
    "/dead-letter",
    response_model=list[DeadLetterResponse],
    dependencies=[Depends(require_status_token)],
)
async def list_dead_letters(
    status: DeadLetterStatus | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    processor: WebhookQueueProcessor = Depends(get_processor),
):
    return await processor.queue_service.list_dead_letters(status=status, limit=limit)


@router.post(
    "/dead-letter/{dead_letter_id}/review",
    response_model=DeadLetterResponse,
    dependencies=[Depends(require_status_token)],
)
async def review_dead_letter(
    dead_letter_id: int,
    request: DeadLetterReviewRequest,
    processor: WebhookQueueProcessor = Depends(get_processor),
):
    """Mark a dead letter as reviewed; 404 if it does not exist"""
    return await processor.queue_service.mark_dead_letter_reviewed(
        dead_letter_id, reviewed_by=request.reviewed_by, notes=request.notes
    )

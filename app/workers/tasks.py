"""
Celery tasks for the webhook queue.

Each task runs its coroutine on a fresh event loop with a fresh database
session (see ``get_task_session``).
"""
import asyncio
from contextlib import contextmanager

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.domain.services.queue_processor import WebhookQueueProcessor
from app.domain.services.reconciliation_service import ReconciliationJob
from app.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    New event loop per task, closed (with its pending tasks) on exit.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # The Redis singleton is bound to this loop; drop it before closing
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at end of task",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="app.workers.tasks.run_webhook_reconciliation")
def run_webhook_reconciliation():
    """
    Periodic reconciliation of the webhook queue.

    Returns the run record. If the run fails, the record is still written
    and the exception propagates so Celery marks the task failed.
    """

    async def _reconcile():
        async with get_task_session() as db:
            job = ReconciliationJob.create(db)
            result = await job.run()
            return result.to_dict()

    return run_async(_reconcile())


@celery_app.task(name="app.workers.tasks.process_webhook_event")
def process_webhook_event(queue_id: int):
    """Process a single queued event by id (manual replays)"""

    async def _process():
        async with get_task_session() as db:
            processor = WebhookQueueProcessor.create(db)
            event = await processor.queue_service.get_event(queue_id)
            if event is None:
                logger.warning("Queued event not found", extra_data={"queue_id": queue_id})
                return {"queue_id": queue_id, "error": "not_found"}

            success = await processor.process_event(event)
            return {"queue_id": queue_id, "success": success}

    return run_async(_process())

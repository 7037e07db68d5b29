"""
Tests for Celery workers (app/workers/tasks.py, app/workers/celery_app.py)

Covers:
- event loop management for sync tasks
- periodic reconciliation task
- single-event processing task
- beat schedule
"""
import asyncio
from contextlib import contextmanager
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import ReconciliationLog, WebhookQueueEvent, WebhookQueueStatus
from app.domain.services.queue_processor import WebhookQueueProcessor
from tests.conftest import approved_payment


@contextmanager
def _patch_run_async_for_test():
    """
    Replace run_async so sync Celery tasks can be called from an async test.

    The tasks call run_async(), which creates a new event loop; a loop is
    already running inside the test, so the coroutine runs on a fresh loop
    in a worker thread instead.
    """
    import concurrent.futures

    def _test_run_async(coro):
        from app.core.logging import set_correlation_id
        set_correlation_id()

        def _run_in_thread():
            new_loop = asyncio.new_event_loop()
            try:
                return new_loop.run_until_complete(coro)
            finally:
                new_loop.close()

        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(_run_in_thread)
            return future.result(timeout=30)

    with patch("app.workers.tasks.run_async", side_effect=_test_run_async):
        yield


@contextmanager
def _task_session(db_session: AsyncSession, processor: WebhookQueueProcessor):
    """Point get_task_session at the test session and wire the test processor"""
    with patch("app.workers.tasks.get_task_session") as mock_session_ctx, \
         patch.object(WebhookQueueProcessor, "create", return_value=processor):
        mock_session_ctx.return_value.__aenter__ = AsyncMock(return_value=db_session)
        mock_session_ctx.return_value.__aexit__ = AsyncMock(return_value=None)
        yield


# ============================================================================
# Event loop management
# ============================================================================


class TestEventLoopManagement:

    def test_get_event_loop_creates_and_closes(self) -> None:
        from app.workers.tasks import get_event_loop

        with get_event_loop() as loop:
            assert loop.is_running() is False

        assert loop.is_closed()

    def test_run_async_executes_coroutine(self) -> None:
        from app.workers.tasks import run_async

        async def _coro():
            return 42

        assert run_async(_coro()) == 42

    def test_run_async_closes_redis_singleton(self) -> None:
        from app.workers.tasks import run_async

        with patch("app.core.redis_client.close_redis", new_callable=AsyncMock) as close_redis:
            async def _coro():
                return "done"

            assert run_async(_coro()) == "done"

        close_redis.assert_awaited_once()


# ============================================================================
# Reconciliation task
# ============================================================================


class TestRunWebhookReconciliation:

    @pytest.mark.asyncio
    async def test_processes_due_events_and_records_run(
        self, db_session, processor, payment_client, order_factory, queue_event_factory
    ) -> None:
        order = await order_factory()
        payment_client.set_payment("PAY-1", approved_payment(order["order_id"]))
        queue_id = await queue_event_factory(payment_id="PAY-1")

        from app.workers.tasks import run_webhook_reconciliation

        with _patch_run_async_for_test(), _task_session(db_session, processor):
            result = run_webhook_reconciliation()

        assert result["status"] == "completed"
        assert result["queue_processed"] == 1
        assert result["job_id"].startswith("reconciliation_")

        event = await db_session.get(WebhookQueueEvent, queue_id, populate_existing=True)
        assert event.status == WebhookQueueStatus.COMPLETED

        logs = (await db_session.execute(select(ReconciliationLog))).scalars().all()
        assert [log.job_id for log in logs] == [result["job_id"]]

    @pytest.mark.asyncio
    async def test_failed_run_propagates(self, db_session, processor) -> None:
        processor.process_pending_events = AsyncMock(side_effect=RuntimeError("db gone"))

        from app.workers.tasks import run_webhook_reconciliation

        with _patch_run_async_for_test(), _task_session(db_session, processor):
            with pytest.raises(RuntimeError):
                run_webhook_reconciliation()

        logs = (await db_session.execute(select(ReconciliationLog))).scalars().all()
        assert len(logs) == 1
        assert logs[0].error == "db gone"


# ============================================================================
# Single event task
# ============================================================================


class TestProcessWebhookEvent:

    @pytest.mark.asyncio
    async def test_processes_event(
        self, db_session, processor, payment_client, order_factory, queue_event_factory
    ) -> None:
        order = await order_factory()
        payment_client.set_payment("PAY-1", approved_payment(order["order_id"]))
        queue_id = await queue_event_factory(payment_id="PAY-1")

        from app.workers.tasks import process_webhook_event

        with _patch_run_async_for_test(), _task_session(db_session, processor):
            result = process_webhook_event(queue_id)

        assert result == {"queue_id": queue_id, "success": True}

    @pytest.mark.asyncio
    async def test_unknown_event(self, db_session, processor) -> None:
        from app.workers.tasks import process_webhook_event

        with _patch_run_async_for_test(), _task_session(db_session, processor):
            result = process_webhook_event(404)

        assert result == {"queue_id": 404, "error": "not_found"}


class TestBeatSchedule:

    @pytest.mark.unit
    def test_reconciliation_is_scheduled(self) -> None:
        from app.core.config import settings
        from app.workers.celery_app import celery_app

        entry = celery_app.conf.beat_schedule["reconcile-webhook-queue"]
        assert entry["task"] == "app.workers.tasks.run_webhook_reconciliation"
        assert entry["schedule"] == settings.WEBHOOK_RECONCILIATION_INTERVAL_SECONDS
        assert celery_app.conf.timezone == "UTC"

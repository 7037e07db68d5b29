"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "payment_webhooks",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=900,  # a full batch against a slow provider
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Reconciliation is the only periodic entry point into the queue
celery_app.conf.beat_schedule = {
    "reconcile-webhook-queue": {
        "task": "app.workers.tasks.run_webhook_reconciliation",
        "schedule": settings.WEBHOOK_RECONCILIATION_INTERVAL_SECONDS,
    },
}

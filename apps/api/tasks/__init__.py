"""
Celery app for background plan synchronization.

Tasks are defined here and imported by both the API (to enqueue) and
the worker (to execute).
"""
from celery import Celery
from core.config import settings

# Create Celery app instance
celery_app = Celery(
    "plan_sync",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # A diff apply is one short transaction; anything longer is stuck.
    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,
    # At-least-once: ack after the task body ran, redeliver if a worker dies mid-job.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.PLAN_SYNC_WORKER_CONCURRENCY,
    task_routes={
        "plan_sync.*": {"queue": settings.PLAN_SYNC_QUEUE},
    },
)

from celerybeat_schedule import beat_schedule  # noqa: E402

celery_app.conf.beat_schedule = beat_schedule

# Import tasks to register them
from . import plan_sync_tasks  # noqa: E402

__all__ = ["celery_app"]

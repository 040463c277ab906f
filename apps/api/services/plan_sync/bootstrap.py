"""
Plan-sync worker bootstrap.

The process that owns the worker (the API in development, or a dedicated
script) creates one WorkerRunState and passes it to PlanSyncWorker. start()
is idempotent: a second call returns immediately while the first worker is
running, and a launch failure leaves the state un-started so a later call
can try again.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from core.config import settings

logger = logging.getLogger(__name__)


class WorkerRunState:
    """Whether this process already runs a plan-sync worker."""

    def __init__(self):
        self.lock = threading.Lock()
        self.started = False
        self.started_at: Optional[datetime] = None
        self.handle: Any = None

    def describe(self) -> dict:
        return {
            "started": self.started,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


def launch_embedded_worker() -> threading.Thread:
    """Run a Celery worker for the plan-sync queue on a daemon thread."""
    from tasks import celery_app

    argv = [
        "worker",
        "--loglevel=INFO",
        f"--concurrency={settings.PLAN_SYNC_WORKER_CONCURRENCY}",
        "--pool=threads",
        "-Q",
        settings.PLAN_SYNC_QUEUE,
    ]
    thread = threading.Thread(
        target=celery_app.worker_main,
        args=(argv,),
        name="plan-sync-worker",
        daemon=True,
    )
    thread.start()
    return thread


class PlanSyncWorker:
    def __init__(self, state: WorkerRunState, launcher: Callable[[], Any] = None):
        self.state = state
        self.launcher = launcher or launch_embedded_worker

    def start(self) -> bool:
        """Start the worker once. Returns False if it was already running."""
        with self.state.lock:
            if self.state.started:
                logger.info("Plan sync worker already running")
                return False
            try:
                handle = self.launcher()
            except Exception as e:
                logger.error(f"Failed to start plan sync worker: {e}", exc_info=True)
                raise
            self.state.handle = handle
            self.state.started = True
            self.state.started_at = datetime.now(timezone.utc)

        logger.info(
            f"Plan sync worker started on queue {settings.PLAN_SYNC_QUEUE} "
            f"(concurrency={settings.PLAN_SYNC_WORKER_CONCURRENCY})"
        )
        return True

    def mark_stopped(self):
        """Forget the running worker (after shutdown) so start() can launch again."""
        with self.state.lock:
            self.state.started = False
            self.state.started_at = None
            self.state.handle = None

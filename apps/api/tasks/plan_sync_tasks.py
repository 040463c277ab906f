"""
Celery tasks for background plan synchronization.

process_plan_sync_job consumes one job envelope:
- retryable failures (dependency not ready, transient store errors) are
  retried through Celery until the job's attempt cap
- dependency-not-ready waits a short fixed delay; transient errors back
  off exponentially
- everything else ends the job with a structured JobResult
"""
import logging
from typing import Any, Dict

from celery import Task

from core import events
from core.config import settings
from core.database import get_db_sync
from core.exceptions import DependencyNotReadyError, TransientSyncError
from core.logging import sync_fields
from services.plan_sync import job_state
from services.plan_sync.messages import JobResult
from services.plan_sync.processor import PlanSyncProcessor
from services.plan_sync.producer import max_attempts_for
from tasks import celery_app

logger = logging.getLogger(__name__)


def retry_countdown(error: Exception, retries: int) -> int:
    """Seconds before the next delivery of a job that raised `error`."""
    if isinstance(error, DependencyNotReadyError):
        return settings.PLAN_SYNC_DEPENDENCY_RETRY_DELAY_S
    return settings.PLAN_SYNC_JOB_BACKOFF_S * (2 ** retries)


@celery_app.task(name="plan_sync.process_job", bind=True, max_retries=None)
def process_plan_sync_job(self: Task, job_id: str, message: Dict[str, Any]) -> Dict[str, Any]:
    """
    Process one plan-sync job.

    Args:
        job_id: PlanSyncJob record id
        message: JSON-serialized JobEnvelope

    Returns:
        JobResult as a dict (success, message, data, error, processed_at)
    """
    attempts_made = self.request.retries or 0
    attempt = attempts_made + 1
    log_extra = sync_fields(job_id=job_id, task_id=self.request.id, attempt=attempt)

    db = get_db_sync()
    try:
        job = job_state.mark_job_started(db, job_id, self.request.id, attempt)
        max_attempts = job.max_attempts if job else max_attempts_for(message.get("metadata"))
        db.commit()

        try:
            result = PlanSyncProcessor().process(message, attempts_made=attempts_made)
        except TransientSyncError as e:
            if attempt >= max_attempts:
                logger.error(f"Plan sync job {job_id} failed after {attempt} attempts: {e}", extra=log_extra)
                result = JobResult(
                    success=False,
                    message=f"Job failed after {attempt} attempts",
                    error=str(e),
                )
                payload = result.model_dump(mode="json")
                job_state.mark_job_failed(db, job_id, str(e), payload)
                db.commit()
                events.emit(events.EVENT_JOB_FAILED, job_id=job_id, error=str(e))
                return payload

            countdown = retry_countdown(e, attempts_made)
            logger.warning(
                f"Plan sync job {job_id} attempt {attempt}/{max_attempts} failed ({e.code}), "
                f"retrying in {countdown}s",
                extra=log_extra,
            )
            job_state.mark_job_retrying(db, job_id, str(e))
            db.commit()
            raise self.retry(exc=e, countdown=countdown)

        payload = result.model_dump(mode="json")
        if result.success:
            job_state.mark_job_completed(db, job_id, payload)
            db.commit()
            logger.info(f"Plan sync job {job_id} completed: {result.message}", extra=log_extra)
            events.emit(events.EVENT_JOB_COMPLETED, job_id=job_id, result=payload)
        else:
            job_state.mark_job_failed(db, job_id, result.error or result.message, payload)
            db.commit()
            logger.error(f"Plan sync job {job_id} failed: {result.error}", extra=log_extra)
            events.emit(events.EVENT_JOB_FAILED, job_id=job_id, error=result.error)
        return payload
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@celery_app.task(name="plan_sync.prune_job_records")
def prune_plan_sync_job_records() -> Dict[str, int]:
    """Keep the most recent completed / failed job records, drop the rest."""
    db = get_db_sync()
    try:
        removed = job_state.prune_finished_jobs(
            db,
            keep_completed=settings.PLAN_SYNC_KEEP_COMPLETED_JOBS,
            keep_failed=settings.PLAN_SYNC_KEEP_FAILED_JOBS,
        )
        db.commit()
        logger.info(f"Pruned plan sync job records: {removed}")
        return removed
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

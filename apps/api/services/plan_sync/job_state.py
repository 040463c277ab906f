"""
Durable plan-sync job records (operational visibility).

The broker owns delivery; PlanSyncJob rows own what people need to see:
status, attempts, last error, final result. Writes here are small and are
called from inside Celery tasks; callers own the commit.

Status lifecycle:
    queued -> running -> completed
                      -> retrying -> running ...
                      -> failed
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import PlanSyncJob
from services.plan_sync.concurrency import coerce_uuid

STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_RETRYING = "retrying"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

ALL_STATUSES = (STATUS_QUEUED, STATUS_RUNNING, STATUS_RETRYING, STATUS_COMPLETED, STATUS_FAILED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_job(
    db: Session,
    message_type: str,
    payload: Dict[str, Any],
    max_attempts: int,
    plan_id: Optional[str] = None,
) -> PlanSyncJob:
    job = PlanSyncJob(
        message_type=message_type,
        payload=payload,
        max_attempts=max_attempts,
        plan_id=coerce_uuid(plan_id),
        status=STATUS_QUEUED,
    )
    db.add(job)
    db.flush()
    return job


def get_job(db: Session, job_id) -> Optional[PlanSyncJob]:
    job_uuid = coerce_uuid(job_id)
    if job_uuid is None:
        return None
    return db.get(PlanSyncJob, job_uuid)


def mark_job_started(db: Session, job_id: UUID, task_id: Optional[str], attempt: int) -> Optional[PlanSyncJob]:
    job = get_job(db, job_id)
    if job is None:
        return None
    job.task_id = task_id or job.task_id
    job.status = STATUS_RUNNING
    job.attempts = attempt
    if job.started_at is None:
        job.started_at = _utcnow()
    db.add(job)
    return job


def mark_job_retrying(db: Session, job_id: UUID, error: str) -> Optional[PlanSyncJob]:
    job = get_job(db, job_id)
    if job is None:
        return None
    job.status = STATUS_RETRYING
    job.error = error
    db.add(job)
    return job


def mark_job_completed(db: Session, job_id: UUID, result: Dict[str, Any]) -> Optional[PlanSyncJob]:
    job = get_job(db, job_id)
    if job is None:
        return None
    job.status = STATUS_COMPLETED
    job.result = result
    job.error = None
    job.finished_at = _utcnow()
    db.add(job)
    return job


def mark_job_failed(db: Session, job_id: UUID, error: str, result: Optional[Dict[str, Any]] = None) -> Optional[PlanSyncJob]:
    job = get_job(db, job_id)
    if job is None:
        return None
    job.status = STATUS_FAILED
    job.error = error
    job.result = result
    job.finished_at = _utcnow()
    db.add(job)
    return job


def get_job_stats(db: Session) -> Dict[str, int]:
    """Counts per status plus a total; statuses with no jobs report 0."""
    rows = db.query(PlanSyncJob.status, func.count(PlanSyncJob.id)).group_by(PlanSyncJob.status).all()
    stats = {status: 0 for status in ALL_STATUSES}
    for status, count in rows:
        stats[status] = count
    stats["total"] = sum(stats[s] for s in ALL_STATUSES)
    return stats


def _prune_status(db: Session, status: str, keep: int) -> int:
    keep_ids = [
        row.id
        for row in db.query(PlanSyncJob.id)
        .filter(PlanSyncJob.status == status)
        .order_by(PlanSyncJob.finished_at.desc(), PlanSyncJob.created_at.desc())
        .limit(keep)
    ]
    query = db.query(PlanSyncJob).filter(PlanSyncJob.status == status)
    if keep_ids:
        query = query.filter(PlanSyncJob.id.notin_(keep_ids))
    return query.delete(synchronize_session=False)


def prune_finished_jobs(db: Session, keep_completed: int, keep_failed: int) -> Dict[str, int]:
    """Keep only the most recent N completed and M failed job records."""
    return {
        "completed_removed": _prune_status(db, STATUS_COMPLETED, keep_completed),
        "failed_removed": _prune_status(db, STATUS_FAILED, keep_failed),
    }

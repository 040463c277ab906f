"""
Plan Sync API Router

Endpoints for:
- Reading the canonical plan tree (and its updated_at token)
- Applying a diff synchronously (200 / 409 / 404 / 422 / 503)
- Queueing a diff as a background job (202 + job id)
- Job status and queue stats
"""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from core.database import get_db
from core.exceptions import (
    ConflictError,
    InvalidDiffError,
    NotFoundError,
    ServiceUnavailableError,
    TransientSyncError,
    ValidationError,
)
from schemas import (
    ApplyChangesRequest,
    ApplyChangesResponse,
    PlanSyncJobResponse,
    PlanSyncStatsResponse,
    QueuedJobResponse,
)
from services.plan_sync.applier import DiffApplier
from services.plan_sync.job_state import get_job, get_job_stats
from services.plan_sync.plan_tree import PlanTree, get_plan_tree_cached
from services.plan_sync.producer import queue_plan_changes

router = APIRouter(prefix="/v1", tags=["Plan Sync"])


@router.get("/workout-plans/{plan_id}", response_model=PlanTree)
def get_workout_plan(plan_id: str, db: Session = Depends(get_db)):
    """Full plan tree. Clients send back `updated_at` with their next diff."""
    tree = get_plan_tree_cached(db, plan_id)
    if tree is None:
        raise NotFoundError("Workout plan", plan_id)
    return tree


@router.post("/workout-plans/{plan_id}/changes", response_model=ApplyChangesResponse)
def apply_workout_plan_changes(plan_id: str, request: ApplyChangesRequest):
    """
    Apply a diff as one transaction.

    409 carries the server's updated_at; the client decides whether to
    reload, overwrite (resend without last_known_updated_at) or re-apply.
    """
    result = DiffApplier().apply(plan_id, request.last_known_updated_at, request.changes)

    if result.success:
        return ApplyChangesResponse(
            plan_id=result.plan_id,
            updated_at=result.new_updated_at,
            id_map=result.id_map,
            counts=result.counts,
        )
    if result.conflict:
        raise ConflictError(
            "Plan has been modified since last fetch",
            server_updated_at=result.server_updated_at,
        )
    if result.error_code == "plan_not_found":
        raise NotFoundError("Workout plan", plan_id)
    if result.retryable:
        raise ServiceUnavailableError(result.error)
    raise ValidationError(result.error)


@router.post(
    "/workout-plans/{plan_id}/changes/queue",
    response_model=QueuedJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def queue_workout_plan_changes(plan_id: str, request: ApplyChangesRequest):
    """Apply the diff in the background; poll /v1/plan-sync/jobs/{job_id}."""
    try:
        request.changes.validate_partitions()
    except InvalidDiffError as e:
        raise ValidationError(str(e))
    try:
        job_id = queue_plan_changes(plan_id, request.changes, request.last_known_updated_at)
    except TransientSyncError as e:
        raise ServiceUnavailableError(str(e))
    return QueuedJobResponse(job_id=job_id)


@router.get("/plan-sync/jobs/{job_id}", response_model=PlanSyncJobResponse)
def get_plan_sync_job(job_id: str, db: Session = Depends(get_db)):
    job = get_job(db, job_id)
    if job is None:
        raise NotFoundError("Plan sync job", job_id)
    return job


@router.get("/plan-sync/stats", response_model=PlanSyncStatsResponse)
def get_plan_sync_stats(request: Request, db: Session = Depends(get_db)):
    stats = get_job_stats(db)
    worker_state = getattr(request.app.state, "plan_sync_worker_state", None)
    return PlanSyncStatsResponse(**stats, worker=worker_state.describe() if worker_state else None)

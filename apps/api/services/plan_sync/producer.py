"""
Plan-sync job producers.

enqueue_plan_sync_job() records a PlanSyncJob row, then hands the envelope
to Celery on the plan-sync queue. The record id is the job id clients poll.

Child-creation helpers can tag a job with a dependency marker when the
parent plan was enqueued moments earlier and may not exist yet.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from kombu.exceptions import OperationalError as BrokerError

from core.config import settings
from core.database import get_db_sync
from core.exceptions import TransientSyncError
from core.logging import sync_fields
from services.plan_sync import job_state
from services.plan_sync.diff import PhasePayload, SessionPayload, WorkoutPlanChanges
from services.plan_sync.messages import (
    DEPENDENCY_SUFFIX,
    UPDATE_TYPE_PHASE_WITH_DEPENDENCY,
    UPDATE_TYPE_SESSION_WITH_DEPENDENCY,
    JobEnvelope,
    MessageType,
)

logger = logging.getLogger(__name__)


def max_attempts_for(metadata: Optional[Dict[str, Any]]) -> int:
    update_type = str((metadata or {}).get("update_type") or "")
    if update_type.endswith(DEPENDENCY_SUFFIX):
        return settings.PLAN_SYNC_DEPENDENCY_MAX_ATTEMPTS
    return settings.PLAN_SYNC_JOB_MAX_ATTEMPTS


def enqueue_plan_sync_job(
    message_type: Union[MessageType, str],
    data: Dict[str, Any],
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Persist a job record and publish it. Returns the job id."""
    from tasks.plan_sync_tasks import process_plan_sync_job

    envelope = JobEnvelope(message_type=message_type, data=data, metadata=metadata or {})
    message = envelope.model_dump(mode="json")
    task_id = str(uuid.uuid4())

    db = get_db_sync()
    try:
        job = job_state.create_job(
            db,
            message_type=envelope.message_type.value,
            payload=message,
            max_attempts=max_attempts_for(envelope.metadata),
            plan_id=envelope.plan_id,
        )
        job.task_id = task_id
        db.commit()
        job_id = str(job.id)

        try:
            process_plan_sync_job.apply_async(
                args=[job_id, message],
                task_id=task_id,
                queue=settings.PLAN_SYNC_QUEUE,
            )
        except BrokerError as e:
            job_state.mark_job_failed(db, job.id, f"Broker unavailable: {e}")
            db.commit()
            raise TransientSyncError(f"Could not enqueue {envelope.message_type.value}: {e}")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    logger.info(
        f"Enqueued {envelope.message_type.value} job {job_id}",
        extra=sync_fields(job_id=job_id, plan_id=envelope.plan_id, task_id=task_id),
    )
    return job_id


def _timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def queue_plan_create(plan_id: str, owner_id: str, name: str = "Workout Plan",
                      assignee_id: Optional[str] = None, is_active: bool = True) -> str:
    return enqueue_plan_sync_job(
        MessageType.WORKOUT_PLAN_CREATE,
        {
            "plan_id": plan_id,
            "name": name,
            "owner_id": owner_id,
            "assignee_id": assignee_id,
            "is_active": is_active,
        },
    )


def queue_plan_changes(plan_id: str, changes: WorkoutPlanChanges,
                       last_known_updated_at: Optional[datetime] = None) -> str:
    return enqueue_plan_sync_job(
        MessageType.WORKOUT_PLAN_CHANGES,
        {
            "plan_id": plan_id,
            "last_known_updated_at": _timestamp(last_known_updated_at),
            "changes": changes.model_dump(mode="json", exclude_unset=True),
        },
    )


def queue_plan_full_save(plan_id: str, phases: List[Dict[str, Any]],
                         last_known_updated_at: Optional[datetime] = None,
                         plan: Optional[Dict[str, Any]] = None) -> str:
    return enqueue_plan_sync_job(
        MessageType.WORKOUT_PLAN_FULL_SAVE,
        {
            "plan_id": plan_id,
            "last_known_updated_at": _timestamp(last_known_updated_at),
            "phases": phases,
            "plan": plan,
        },
    )


def queue_phase_create(plan_id: str, phase: PhasePayload, plan_pending: bool = False) -> str:
    """plan_pending: the plan itself was just enqueued and may not exist yet."""
    metadata = {"update_type": UPDATE_TYPE_PHASE_WITH_DEPENDENCY} if plan_pending else {}
    return enqueue_plan_sync_job(
        MessageType.WORKOUT_PHASE_CREATE,
        {"plan_id": plan_id, "phase": phase.model_dump(mode="json")},
        metadata=metadata,
    )


def queue_session_create(plan_id: str, phase_id: str, session: SessionPayload, plan_pending: bool = False) -> str:
    metadata = {"update_type": UPDATE_TYPE_SESSION_WITH_DEPENDENCY} if plan_pending else {}
    return enqueue_plan_sync_job(
        MessageType.WORKOUT_SESSION_CREATE,
        {"plan_id": plan_id, "phase_id": phase_id, "session": session.model_dump(mode="json")},
        metadata=metadata,
    )

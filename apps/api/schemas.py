from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from uuid import UUID
from typing import Optional, Dict, Any

from services.plan_sync.diff import WorkoutPlanChanges


class ApplyChangesRequest(BaseModel):
    """A diff plus the updated_at the client last saw (omit to skip the conflict check)."""
    last_known_updated_at: Optional[datetime] = None
    changes: WorkoutPlanChanges


class ApplyChangesResponse(BaseModel):
    plan_id: str
    updated_at: Optional[datetime]
    id_map: Dict[str, str] = Field(default_factory=dict)  # placeholder -> stored id
    counts: Dict[str, int] = Field(default_factory=dict)


class QueuedJobResponse(BaseModel):
    job_id: str
    status: str = "queued"


class PlanSyncJobResponse(BaseModel):
    id: UUID
    task_id: Optional[str] = None
    plan_id: Optional[UUID] = None
    message_type: str
    status: str
    attempts: int
    max_attempts: int
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PlanSyncStatsResponse(BaseModel):
    queued: int = 0
    running: int = 0
    retrying: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0
    worker: Optional[Dict[str, Any]] = None

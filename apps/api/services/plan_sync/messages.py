"""
Background job messages.

Every job is an envelope {message_type, data, metadata, timestamp}. data is
validated against the model registered for its message type before the
processor touches the store.

Dependency marker: a job whose metadata.update_type ends with
"_with_dependency" may legitimately arrive before its parent plan exists;
"plan not found" on such a job is retried instead of failing.
"""
import enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from services.plan_sync.diff import (
    ExerciseChanges,
    ExercisePayload,
    PhaseChanges,
    PhasePayload,
    PlanPayload,
    SessionChanges,
    SessionPayload,
    WorkoutPlanChanges,
)
from services.plan_sync.plan_tree import PhaseNode

DEPENDENCY_SUFFIX = "_with_dependency"
UPDATE_TYPE_PHASE_WITH_DEPENDENCY = "phase_creation_with_dependency"
UPDATE_TYPE_SESSION_WITH_DEPENDENCY = "session_creation_with_dependency"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageType(str, enum.Enum):
    WORKOUT_PLAN_CREATE = "WORKOUT_PLAN_CREATE"
    WORKOUT_PLAN_CHANGES = "WORKOUT_PLAN_CHANGES"
    WORKOUT_PLAN_FULL_SAVE = "WORKOUT_PLAN_FULL_SAVE"
    WORKOUT_PHASE_CREATE = "WORKOUT_PHASE_CREATE"
    WORKOUT_PHASE_UPDATE = "WORKOUT_PHASE_UPDATE"
    WORKOUT_PHASE_DELETE = "WORKOUT_PHASE_DELETE"
    WORKOUT_PHASE_DUPLICATE = "WORKOUT_PHASE_DUPLICATE"
    WORKOUT_PHASE_ACTIVATE = "WORKOUT_PHASE_ACTIVATE"
    WORKOUT_SESSION_CREATE = "WORKOUT_SESSION_CREATE"
    WORKOUT_SESSION_UPDATE = "WORKOUT_SESSION_UPDATE"
    WORKOUT_SESSION_DELETE = "WORKOUT_SESSION_DELETE"
    WORKOUT_SESSION_DUPLICATE = "WORKOUT_SESSION_DUPLICATE"
    WORKOUT_EXERCISE_CREATE = "WORKOUT_EXERCISE_CREATE"
    WORKOUT_EXERCISE_UPDATE = "WORKOUT_EXERCISE_UPDATE"
    WORKOUT_EXERCISE_DELETE = "WORKOUT_EXERCISE_DELETE"


class JobEnvelope(BaseModel):
    message_type: MessageType
    data: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)

    @property
    def plan_id(self) -> Optional[str]:
        value = self.data.get("plan_id")
        return str(value) if value else None

    @property
    def has_dependency_marker(self) -> bool:
        return str(self.metadata.get("update_type") or "").endswith(DEPENDENCY_SUFFIX)


class JobResult(BaseModel):
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    processed_at: datetime = Field(default_factory=_utcnow)


# ============ Job data per message type ============

class PlanJobData(BaseModel):
    plan_id: str
    last_known_updated_at: Optional[datetime] = None


class PlanCreateData(PlanJobData):
    name: str = "Workout Plan"
    owner_id: str
    assignee_id: Optional[str] = None
    is_active: bool = True

    def as_payload(self) -> PlanPayload:
        return PlanPayload(
            name=self.name,
            owner_id=self.owner_id,
            assignee_id=self.assignee_id,
            is_active=self.is_active,
        )


class PlanChangesData(PlanJobData):
    changes: WorkoutPlanChanges


class PlanFullSaveData(PlanJobData):
    phases: List[PhaseNode] = Field(default_factory=list)
    plan: Optional[PlanPayload] = None


class PhaseCreateData(PlanJobData):
    phase: PhasePayload


class PhaseUpdateData(PlanJobData):
    phase_id: str
    changes: PhaseChanges


class PhaseDeleteData(PlanJobData):
    phase_id: str


class PhaseDuplicateData(PlanJobData):
    source_phase_id: str
    name: Optional[str] = None
    order_number: Optional[int] = None


class PhaseActivateData(PlanJobData):
    phase_id: str
    is_active: bool = True


class SessionCreateData(PlanJobData):
    phase_id: str
    session: SessionPayload


class SessionUpdateData(PlanJobData):
    session_id: str
    changes: SessionChanges


class SessionDeleteData(PlanJobData):
    session_id: str


class SessionDuplicateData(PlanJobData):
    source_session_id: str
    target_phase_id: Optional[str] = None  # defaults to the source's phase
    name: Optional[str] = None
    order_number: Optional[int] = None


class ExerciseCreateData(PlanJobData):
    session_id: str
    exercise: ExercisePayload


class ExerciseUpdateData(PlanJobData):
    plan_exercise_id: str
    changes: ExerciseChanges


class ExerciseDeleteData(PlanJobData):
    plan_exercise_id: str


DATA_MODELS = {
    MessageType.WORKOUT_PLAN_CREATE: PlanCreateData,
    MessageType.WORKOUT_PLAN_CHANGES: PlanChangesData,
    MessageType.WORKOUT_PLAN_FULL_SAVE: PlanFullSaveData,
    MessageType.WORKOUT_PHASE_CREATE: PhaseCreateData,
    MessageType.WORKOUT_PHASE_UPDATE: PhaseUpdateData,
    MessageType.WORKOUT_PHASE_DELETE: PhaseDeleteData,
    MessageType.WORKOUT_PHASE_DUPLICATE: PhaseDuplicateData,
    MessageType.WORKOUT_PHASE_ACTIVATE: PhaseActivateData,
    MessageType.WORKOUT_SESSION_CREATE: SessionCreateData,
    MessageType.WORKOUT_SESSION_UPDATE: SessionUpdateData,
    MessageType.WORKOUT_SESSION_DELETE: SessionDeleteData,
    MessageType.WORKOUT_SESSION_DUPLICATE: SessionDuplicateData,
    MessageType.WORKOUT_EXERCISE_CREATE: ExerciseCreateData,
    MessageType.WORKOUT_EXERCISE_UPDATE: ExerciseUpdateData,
    MessageType.WORKOUT_EXERCISE_DELETE: ExerciseDeleteData,
}

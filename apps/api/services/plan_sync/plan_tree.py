"""
Canonical plan tree read model.

The shape a client holds in memory: plan -> ordered phases -> ordered
sessions -> exercises, plus the plan's updated_at (the token it sends back
with its next diff).
"""
import logging
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, selectinload

from core.cache import get_cache, plan_tree_key, set_cache
from models import PlanPhase, PlanSession, WorkoutPlan
from services.plan_sync.concurrency import coerce_uuid, ensure_utc, read_updated_at
from services.plan_sync.diff import ExercisePayload, PhasePayload, SessionPayload

logger = logging.getLogger(__name__)


class ExerciseNode(ExercisePayload):
    pass


class SessionNode(SessionPayload):
    exercises: List[ExerciseNode] = Field(default_factory=list)


class PhaseNode(PhasePayload):
    sessions: List[SessionNode] = Field(default_factory=list)


class PlanTree(BaseModel):
    id: str
    name: str
    owner_id: str
    assignee_id: Optional[str] = None
    is_active: bool
    updated_at: datetime
    phases: List[PhaseNode] = Field(default_factory=list)


def _exercise_node(row) -> ExerciseNode:
    return ExerciseNode(
        id=str(row.id),
        exercise_id=str(row.exercise_id),
        order_marker=row.order_marker,
        target_area=row.target_area,
        motion=row.motion,
        description=row.description,
        sets_min=row.sets_min,
        sets_max=row.sets_max,
        reps_min=row.reps_min,
        reps_max=row.reps_max,
        rest_min=row.rest_min,
        rest_max=row.rest_max,
        tempo=row.tempo,
        tut=row.tut,
        customizations=row.customizations,
        notes=row.notes,
    )


def load_plan_tree(db: Session, plan_id) -> Optional[PlanTree]:
    """Load the full tree for a plan, or None if the plan does not exist."""
    plan_uuid = coerce_uuid(plan_id)
    if plan_uuid is None:
        return None

    plan = (
        db.query(WorkoutPlan)
        .options(
            selectinload(WorkoutPlan.phases)
            .selectinload(PlanPhase.sessions)
            .selectinload(PlanSession.exercises)
        )
        .filter(WorkoutPlan.id == plan_uuid)
        .first()
    )
    if not plan:
        return None

    return PlanTree(
        id=str(plan.id),
        name=plan.name,
        owner_id=plan.owner_id,
        assignee_id=plan.assignee_id,
        is_active=plan.is_active,
        updated_at=ensure_utc(plan.updated_at),
        phases=[
            PhaseNode(
                id=str(phase.id),
                name=phase.name,
                order_number=phase.order_number,
                is_active=phase.is_active,
                sessions=[
                    SessionNode(
                        id=str(session.id),
                        name=session.name,
                        order_number=session.order_number,
                        session_time=session.session_time,
                        exercises=[_exercise_node(e) for e in session.exercises],
                    )
                    for session in phase.sessions
                ],
            )
            for phase in plan.phases
        ],
    )


def get_plan_tree_cached(db: Session, plan_id) -> Optional[PlanTree]:
    """
    Read-through Redis cache in front of load_plan_tree.

    A cached tree is served only while its updated_at matches the stored
    token, so a reader that loaded the tree before a concurrent apply and
    cached it after the applier's invalidation can never hand out the old
    token.
    """
    current = read_updated_at(db, plan_id)
    if current is None:
        return None

    key = plan_tree_key(str(plan_id))
    cached = get_cache(key)
    if cached:
        tree = PlanTree.model_validate(cached)
        if ensure_utc(tree.updated_at) == current:
            return tree
        logger.debug(f"Cached tree for plan {plan_id} is stale, reloading")

    tree = load_plan_tree(db, plan_id)
    if tree is not None:
        set_cache(key, tree.model_dump(mode="json"))
    return tree

"""
Background Job Processor

Turns a job envelope into a diff, hands it to the Diff Applier and
classifies the outcome:

- success                                   -> JobResult(success=True)
- plan not found + dependency marker        -> raise DependencyNotReadyError
- transient store failure                   -> raise TransientSyncError
- anything else (conflict, invalid diff...) -> JobResult(success=False)

Raising is how a job asks the transport to retry it; returning a failed
JobResult ends it. There is no per-plan lock: two jobs for the same plan
race on the applier's timestamp compare-and-set and the loser conflicts.
"""
import logging
from typing import Any, Callable, Dict, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import sessionmaker

from core.database import SessionLocal
from core.exceptions import (
    DependencyNotReadyError,
    InvalidDiffError,
    PlanNotFoundError,
    PlanSyncError,
    TransientSyncError,
)
from core.logging import sync_fields
from services.plan_sync.applier import ApplyResult, DiffApplier
from services.plan_sync.change_tracker import diff_phase_trees
from services.plan_sync.diff import (
    ExerciseCreate,
    ExercisePayload,
    ExerciseUpdate,
    PhaseChanges,
    PhasePayload,
    PhaseUpdate,
    SessionCreate,
    SessionPayload,
    SessionUpdate,
    WorkoutPlanChanges,
)
from services.plan_sync.messages import DATA_MODELS, JobEnvelope, JobResult, MessageType
from services.plan_sync.plan_tree import PlanTree, SessionNode, load_plan_tree

logger = logging.getLogger(__name__)

# (diff, expected updated_at, success message, extra result data)
Plan = Tuple[WorkoutPlanChanges, Any, str, Dict[str, Any]]


def _copy_session(diff: WorkoutPlanChanges, session: SessionNode, phase_ref: str, prefix: str,
                  name: Optional[str] = None, order_number: Optional[int] = None):
    """Append creates for a session and its exercises under placeholder ids."""
    session_ref = f"{prefix}-session"
    diff.created.sessions.append(
        SessionCreate(
            phase_id=phase_ref,
            session=SessionPayload(
                id=session_ref,
                name=name or session.name,
                order_number=session.order_number if order_number is None else order_number,
                session_time=session.session_time,
            ),
        )
    )
    for index, exercise in enumerate(session.exercises):
        fields = exercise.model_dump(exclude={"id"})
        diff.created.exercises.append(
            ExerciseCreate(
                session_id=session_ref,
                exercise=ExercisePayload(id=f"{prefix}-exercise-{index}", **fields),
            )
        )


class PlanSyncProcessor:
    def __init__(self, applier: DiffApplier = None, session_factory: sessionmaker = None):
        self.session_factory = session_factory or SessionLocal
        self.applier = applier or DiffApplier(self.session_factory)
        self._handlers: Dict[MessageType, Callable[[Any], Plan]] = {
            MessageType.WORKOUT_PLAN_CREATE: self._plan_create,
            MessageType.WORKOUT_PLAN_CHANGES: self._plan_changes,
            MessageType.WORKOUT_PLAN_FULL_SAVE: self._plan_full_save,
            MessageType.WORKOUT_PHASE_CREATE: self._phase_create,
            MessageType.WORKOUT_PHASE_UPDATE: self._phase_update,
            MessageType.WORKOUT_PHASE_DELETE: self._phase_delete,
            MessageType.WORKOUT_PHASE_DUPLICATE: self._phase_duplicate,
            MessageType.WORKOUT_PHASE_ACTIVATE: self._phase_activate,
            MessageType.WORKOUT_SESSION_CREATE: self._session_create,
            MessageType.WORKOUT_SESSION_UPDATE: self._session_update,
            MessageType.WORKOUT_SESSION_DELETE: self._session_delete,
            MessageType.WORKOUT_SESSION_DUPLICATE: self._session_duplicate,
            MessageType.WORKOUT_EXERCISE_CREATE: self._exercise_create,
            MessageType.WORKOUT_EXERCISE_UPDATE: self._exercise_update,
            MessageType.WORKOUT_EXERCISE_DELETE: self._exercise_delete,
        }

    def process(self, envelope: Union[JobEnvelope, Dict[str, Any]], attempts_made: int = 0) -> JobResult:
        """
        Process one delivery of a job.

        attempts_made counts earlier deliveries of the same job (0 on the
        first one); it is only used for logging here, the transport owns the
        attempt cap.
        """
        try:
            if not isinstance(envelope, JobEnvelope):
                envelope = JobEnvelope.model_validate(envelope)
        except PydanticValidationError as e:
            return JobResult(success=False, message="Invalid job message", error=str(e))

        message_type = envelope.message_type
        log_extra = sync_fields(plan_id=envelope.plan_id, message_type=message_type.value, attempt=attempts_made + 1)
        logger.info(f"Processing {message_type.value} for plan {envelope.plan_id} (attempt {attempts_made + 1})", extra=log_extra)

        try:
            data = DATA_MODELS[message_type].model_validate(envelope.data)
        except PydanticValidationError as e:
            logger.warning(f"Rejected {message_type.value}: invalid data", extra=log_extra)
            return JobResult(success=False, message=f"Invalid data for {message_type.value}", error=str(e))

        try:
            diff, expected, success_message, extra = self._handlers[message_type](data)
            result = self.applier.apply(data.plan_id, expected, diff)
        except TransientSyncError:
            raise
        except PlanSyncError as e:
            if e.code == "plan_not_found" and envelope.has_dependency_marker:
                raise DependencyNotReadyError(data.plan_id)
            logger.warning(f"{message_type.value} failed permanently: {e}", extra=log_extra)
            return JobResult(success=False, message=f"Failed to process {message_type.value}", error=str(e))
        except Exception as e:
            logger.error(f"Unexpected error processing {message_type.value}: {e}", exc_info=True, extra=log_extra)
            return JobResult(success=False, message=f"Failed to process {message_type.value}", error=str(e))

        return self._classify(envelope, result, success_message, extra)

    def _classify(self, envelope: JobEnvelope, result: ApplyResult, success_message: str,
                  extra: Dict[str, Any]) -> JobResult:
        if result.success:
            data = {
                "plan_id": result.plan_id,
                "updated_at": result.new_updated_at.isoformat() if result.new_updated_at else None,
                "id_map": result.id_map,
                "counts": result.counts,
            }
            data.update(extra)
            return JobResult(success=True, message=success_message, data=data)

        if result.error_code == "plan_not_found" and envelope.has_dependency_marker:
            logger.info(f"Plan {result.plan_id} not created yet; {envelope.message_type.value} will be retried")
            raise DependencyNotReadyError(result.plan_id)

        if result.retryable:
            raise TransientSyncError(result.error or "Transient store failure")

        data = None
        if result.conflict:
            data = {
                "plan_id": result.plan_id,
                "server_updated_at": result.server_updated_at.isoformat() if result.server_updated_at else None,
            }
        return JobResult(
            success=False,
            message=f"Failed to process {envelope.message_type.value}",
            data=data,
            error=result.error,
        )

    # ------------------------------------------------------------ loading

    def _load_tree(self, plan_id: str) -> Optional[PlanTree]:
        db = self.session_factory()
        try:
            return load_plan_tree(db, plan_id)
        finally:
            db.close()

    def _require_tree(self, plan_id: str) -> PlanTree:
        tree = self._load_tree(plan_id)
        if tree is None:
            # Same error the applier reports, so the dependency marker applies.
            raise PlanNotFoundError(plan_id)
        return tree

    # ------------------------------------------------------------ plan

    def _plan_create(self, data) -> Plan:
        diff = WorkoutPlanChanges(plan=data.as_payload())
        return diff, None, "Workout plan created", {}

    def _plan_changes(self, data) -> Plan:
        return data.changes, data.last_known_updated_at, "Workout plan changes applied", {}

    def _plan_full_save(self, data) -> Plan:
        tree = self._load_tree(data.plan_id)
        current = tree.phases if tree is not None else []
        diff = diff_phase_trees(current, data.phases)
        diff.plan = data.plan
        return diff, data.last_known_updated_at, "Workout plan saved", {"changes": diff.summary()}

    # ------------------------------------------------------------ phases

    def _phase_create(self, data) -> Plan:
        diff = WorkoutPlanChanges()
        diff.created.phases.append(data.phase)
        return diff, data.last_known_updated_at, "Phase created successfully", {"phase_id": data.phase.id}

    def _phase_update(self, data) -> Plan:
        diff = WorkoutPlanChanges()
        diff.updated.phases.append(PhaseUpdate(id=data.phase_id, changes=data.changes))
        return (
            diff,
            data.last_known_updated_at,
            "Phase update processed successfully",
            {"phase_id": data.phase_id, "updated_fields": len(data.changes.as_dict())},
        )

    def _phase_delete(self, data) -> Plan:
        diff = WorkoutPlanChanges()
        diff.deleted.phases.append(data.phase_id)
        return diff, data.last_known_updated_at, "Phase deleted successfully", {"phase_id": data.phase_id}

    def _phase_duplicate(self, data) -> Plan:
        tree = self._require_tree(data.plan_id)
        source = next((p for p in tree.phases if p.id == data.source_phase_id), None)
        if source is None:
            raise InvalidDiffError(f"Phase {data.source_phase_id} not found in plan {data.plan_id}")

        order_number = data.order_number
        if order_number is None:
            order_number = max(p.order_number for p in tree.phases) + 1

        diff = WorkoutPlanChanges()
        phase_ref = "copy-phase"
        diff.created.phases.append(
            PhasePayload(
                id=phase_ref,
                name=data.name or f"{source.name} (Copy)",
                order_number=order_number,
                is_active=False,
            )
        )
        for index, session in enumerate(source.sessions):
            _copy_session(diff, session, phase_ref, prefix=f"copy-{index}")

        expected = data.last_known_updated_at or tree.updated_at
        return diff, expected, "Phase duplicated successfully", {"source_phase_id": source.id}

    def _phase_activate(self, data) -> Plan:
        """Activate one phase and deactivate every other active phase (or just deactivate)."""
        tree = self._require_tree(data.plan_id)
        if not any(p.id == data.phase_id for p in tree.phases):
            raise InvalidDiffError(f"Phase {data.phase_id} not found in plan {data.plan_id}")

        diff = WorkoutPlanChanges()
        for phase in tree.phases:
            if phase.id == data.phase_id:
                if phase.is_active != data.is_active:
                    diff.updated.phases.append(
                        PhaseUpdate(id=phase.id, changes=PhaseChanges(is_active=data.is_active))
                    )
            elif data.is_active and phase.is_active:
                diff.updated.phases.append(PhaseUpdate(id=phase.id, changes=PhaseChanges(is_active=False)))

        expected = data.last_known_updated_at or tree.updated_at
        return diff, expected, "Phase activation updated", {"phase_id": data.phase_id, "is_active": data.is_active}

    # ------------------------------------------------------------ sessions

    def _session_create(self, data) -> Plan:
        diff = WorkoutPlanChanges()
        diff.created.sessions.append(SessionCreate(phase_id=data.phase_id, session=data.session))
        return diff, data.last_known_updated_at, "Session created successfully", {"session_id": data.session.id}

    def _session_update(self, data) -> Plan:
        diff = WorkoutPlanChanges()
        diff.updated.sessions.append(SessionUpdate(id=data.session_id, changes=data.changes))
        return diff, data.last_known_updated_at, "Session updated successfully", {"session_id": data.session_id}

    def _session_delete(self, data) -> Plan:
        diff = WorkoutPlanChanges()
        diff.deleted.sessions.append(data.session_id)
        return diff, data.last_known_updated_at, "Session deleted successfully", {"session_id": data.session_id}

    def _session_duplicate(self, data) -> Plan:
        tree = self._require_tree(data.plan_id)
        found = [
            (phase, session)
            for phase in tree.phases
            for session in phase.sessions
            if session.id == data.source_session_id
        ]
        if not found:
            raise InvalidDiffError(f"Session {data.source_session_id} not found in plan {data.plan_id}")
        source_phase, source = found[0]

        target_phase_id = data.target_phase_id or source_phase.id
        target = next((p for p in tree.phases if p.id == target_phase_id), None)
        if target is None:
            raise InvalidDiffError(f"Phase {target_phase_id} not found in plan {data.plan_id}")

        order_number = data.order_number
        if order_number is None:
            order_number = max((s.order_number for s in target.sessions), default=0) + 1

        diff = WorkoutPlanChanges()
        _copy_session(
            diff,
            source,
            target.id,
            prefix="copy",
            name=data.name or f"{source.name} (Copy)",
            order_number=order_number,
        )
        expected = data.last_known_updated_at or tree.updated_at
        return diff, expected, "Session duplicated successfully", {"source_session_id": source.id}

    # ------------------------------------------------------------ exercises

    def _exercise_create(self, data) -> Plan:
        diff = WorkoutPlanChanges()
        diff.created.exercises.append(ExerciseCreate(session_id=data.session_id, exercise=data.exercise))
        return diff, data.last_known_updated_at, "Exercise created successfully", {"plan_exercise_id": data.exercise.id}

    def _exercise_update(self, data) -> Plan:
        diff = WorkoutPlanChanges()
        diff.updated.exercises.append(ExerciseUpdate(id=data.plan_exercise_id, changes=data.changes))
        return (
            diff,
            data.last_known_updated_at,
            "Exercise updated successfully",
            {"plan_exercise_id": data.plan_exercise_id},
        )

    def _exercise_delete(self, data) -> Plan:
        diff = WorkoutPlanChanges()
        diff.deleted.exercises.append(data.plan_exercise_id)
        return diff, data.last_known_updated_at, "Exercise deleted successfully", {"plan_exercise_id": data.plan_exercise_id}

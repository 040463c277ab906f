"""
Diff Applier

Applies a WorkoutPlanChanges to the canonical store as one transaction:

1. optimistic concurrency check (short-circuits on conflict)
2. plan row created first when it is missing and the diff carries a plan payload
3. deletes, child -> parent (exercises, sessions, phases); deleting a parent
   removes its descendants in the same transaction
4. updates; order_number changes go through temporary values so swaps never
   trip the unique constraints
5. creates, parent -> child (phases, sessions, exercises), placeholder ids
   resolved through an IdMap built during this pass
6. plan updated_at stamped last with a compare-and-set

Updates and deletes of ids that no longer exist (or never belonged to the
plan) are skipped: a redelivered diff must not fail. Creates whose UUID id
already exists in the plan are skipped for the same reason; a UUID that
exists under another plan makes the diff invalid.

apply() never raises for expected failures; it returns an ApplyResult with
status success / conflict / error.
"""
import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from core import events
from core.cache import invalidate_plan_cache
from core.database import SessionLocal
from core.exceptions import InvalidDiffError, PlanNotFoundError, PlanSyncError
from core.logging import sync_fields
from models import Exercise, PlanExercise, PlanPhase, PlanSession, WorkoutPlan
from services.plan_sync.concurrency import (
    TimestampLike,
    check_and_lock,
    coerce_uuid,
    next_updated_at,
    read_updated_at,
    stamp_plan,
)
from services.plan_sync.diff import PlanPayload, WorkoutPlanChanges

logger = logging.getLogger(__name__)


class ApplyStatus(str, enum.Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    ERROR = "error"


@dataclass
class ApplyResult:
    status: ApplyStatus
    plan_id: str
    new_updated_at: Optional[datetime] = None
    server_updated_at: Optional[datetime] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
    id_map: Dict[str, str] = field(default_factory=dict)
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == ApplyStatus.SUCCESS

    @property
    def conflict(self) -> bool:
        return self.status == ApplyStatus.CONFLICT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "plan_id": self.plan_id,
            "new_updated_at": self.new_updated_at.isoformat() if self.new_updated_at else None,
            "server_updated_at": self.server_updated_at.isoformat() if self.server_updated_at else None,
            "error": self.error,
            "error_code": self.error_code,
            "retryable": self.retryable,
            "id_map": dict(self.id_map),
            "counts": dict(self.counts),
        }


class IdMap:
    """
    Client id -> stored id table for one apply call.

    UUID client ids are stored as-is; placeholders ("new-phase-1") get a
    fresh uuid4, reported back in `generated` so the client can swap them.
    """

    def __init__(self):
        self._ids: Dict[str, uuid.UUID] = {}
        self.generated: Dict[str, str] = {}

    def assign(self, client_id: str) -> uuid.UUID:
        real = coerce_uuid(client_id)
        if real is None:
            real = uuid.uuid4()
            self.generated[client_id] = str(real)
        self._ids[client_id] = real
        return real

    def resolve(self, ref: str) -> Optional[uuid.UUID]:
        if ref in self._ids:
            return self._ids[ref]
        return coerce_uuid(ref)


def _uuids(ids: List[str]) -> List[uuid.UUID]:
    return [u for u in (coerce_uuid(i) for i in ids) if u is not None]


def _delete_ids(db: Session, model, ids) -> int:
    if not ids:
        return 0
    result = db.execute(
        delete(model).where(model.id.in_(list(ids))).execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def _set_fields(row, changes: Dict[str, Any]):
    for name, value in changes.items():
        setattr(row, name, value)


def _update_ordered_rows(db: Session, rows_and_changes: List[tuple]) -> int:
    """
    Apply partial changes to loaded rows.

    Rows whose order_number changes are first parked on distinct negative
    values and flushed, so a swap inside one diff never collides with the
    (parent, order_number) unique constraint mid-flush.
    """
    reordered = [row for row, changes in rows_and_changes if "order_number" in changes]
    for index, row in enumerate(reordered):
        row.order_number = -(index + 1)
    if reordered:
        db.flush()

    for row, changes in rows_and_changes:
        _set_fields(row, changes)
    db.flush()
    return len(rows_and_changes)


class DiffApplier:
    """
    Usage:
        applier = DiffApplier()
        result = applier.apply(plan_id, tree.updated_at, diff)
        if result.conflict:
            ... prompt the user with result.server_updated_at ...
    """

    def __init__(self, session_factory: sessionmaker = None):
        self.session_factory = session_factory or SessionLocal

    # ------------------------------------------------------------------ API

    def apply(
        self,
        plan_id,
        expected_updated_at: TimestampLike,
        diff: Union[WorkoutPlanChanges, Dict[str, Any]],
    ) -> ApplyResult:
        plan_key = str(plan_id)
        try:
            if not isinstance(diff, WorkoutPlanChanges):
                diff = WorkoutPlanChanges.model_validate(diff)
            diff.validate_partitions()
        except PydanticValidationError as e:
            return self._error(plan_key, f"Malformed diff: {e}", "invalid_diff")
        except InvalidDiffError as e:
            return self._error(plan_key, str(e), e.code)

        db = self.session_factory()
        try:
            result = self._apply_in_session(db, plan_key, expected_updated_at, diff)
            if result.success:
                db.commit()
            else:
                db.rollback()
        except PlanSyncError as e:
            db.rollback()
            result = self._error(plan_key, str(e), e.code, retryable=e.retryable)
        except IntegrityError as e:
            db.rollback()
            result = self._error(plan_key, f"Integrity violation: {e.orig}", "integrity_error")
        except OperationalError as e:
            db.rollback()
            result = self._error(plan_key, f"Store unavailable: {e.orig}", "store_unavailable", retryable=True)
        except DBAPIError as e:
            db.rollback()
            if e.connection_invalidated:
                result = self._error(plan_key, f"Connection lost: {e.orig}", "store_unavailable", retryable=True)
            else:
                result = self._error(plan_key, f"Store error: {e.orig}", "store_error")
        except SQLAlchemyError as e:
            db.rollback()
            result = self._error(plan_key, f"Store error: {e}", "store_error")
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        self._after_apply(result)
        return result

    # ------------------------------------------------------------ internals

    @staticmethod
    def _error(plan_id: str, message: str, code: str, retryable: bool = False) -> ApplyResult:
        logger.error(
            f"Diff apply failed for plan {plan_id} ({code}): {message}",
            extra=sync_fields(plan_id=plan_id, error_code=code, retryable=retryable),
        )
        return ApplyResult(
            status=ApplyStatus.ERROR,
            plan_id=plan_id,
            error=message,
            error_code=code,
            retryable=retryable,
        )

    def _after_apply(self, result: ApplyResult):
        if result.success:
            invalidate_plan_cache(result.plan_id)
            events.emit(
                events.EVENT_PLAN_CHANGES_APPLIED,
                plan_id=result.plan_id,
                updated_at=result.new_updated_at,
                counts=result.counts,
            )
        elif result.conflict:
            events.emit(
                events.EVENT_PLAN_CONFLICT,
                plan_id=result.plan_id,
                server_updated_at=result.server_updated_at,
            )

    def _apply_in_session(
        self, db: Session, plan_id: str, expected_updated_at: TimestampLike, diff: WorkoutPlanChanges
    ) -> ApplyResult:
        guard = check_and_lock(db, plan_id, expected_updated_at)
        if guard.conflict:
            return ApplyResult(
                status=ApplyStatus.CONFLICT,
                plan_id=plan_id,
                server_updated_at=guard.server_updated_at,
                error="Plan has been modified since last fetch",
                error_code="conflict",
            )

        plan_uuid = coerce_uuid(plan_id)
        created_plan = None
        if guard.needs_creation:
            if diff.plan is None:
                raise PlanNotFoundError(plan_id)
            if plan_uuid is None:
                raise InvalidDiffError(f"Cannot create plan with non-UUID id {plan_id}")
            created_plan = self._create_plan(db, plan_uuid, diff.plan)
            plan_changed = True
        else:
            plan_changed = self._update_plan(db, plan_uuid, diff.plan)

        if diff.is_empty() and not plan_changed:
            return ApplyResult(
                status=ApplyStatus.SUCCESS,
                plan_id=plan_id,
                new_updated_at=guard.server_updated_at,
            )

        id_map = IdMap()
        counts = {"created": 0, "updated": 0, "deleted": 0}
        counts["deleted"] = self._apply_deletes(db, plan_uuid, diff)
        counts["updated"] = self._apply_updates(db, plan_uuid, diff)
        counts["created"] = self._apply_creates(db, plan_uuid, diff, id_map)

        new_updated_at = next_updated_at(guard.server_updated_at)
        if created_plan is not None:
            created_plan.updated_at = new_updated_at
            db.flush()
        elif not stamp_plan(db, plan_uuid, guard.server_updated_at, new_updated_at):
            server_now = read_updated_at(db, plan_uuid)
            logger.warning(f"Plan {plan_id} changed underneath apply; reporting conflict")
            return ApplyResult(
                status=ApplyStatus.CONFLICT,
                plan_id=plan_id,
                server_updated_at=server_now,
                error="Plan has been modified since last fetch",
                error_code="conflict",
            )

        logger.info(
            f"Applied diff to plan {plan_id}: created={counts['created']} "
            f"updated={counts['updated']} deleted={counts['deleted']} "
            f"updated_at={new_updated_at.isoformat()}",
            extra=sync_fields(plan_id=plan_id),
        )
        return ApplyResult(
            status=ApplyStatus.SUCCESS,
            plan_id=plan_id,
            new_updated_at=new_updated_at,
            id_map=dict(id_map.generated),
            counts=counts,
        )

    # ---- plan row

    @staticmethod
    def _create_plan(db: Session, plan_uuid: uuid.UUID, payload: PlanPayload) -> WorkoutPlan:
        plan = WorkoutPlan(
            id=plan_uuid,
            name=payload.name,
            owner_id=payload.owner_id,
            assignee_id=payload.assignee_id,
            is_active=payload.is_active,
        )
        db.add(plan)
        # Children must never reference a plan row that is not there yet.
        db.flush()
        logger.info(f"Created workout plan {plan_uuid}")
        return plan

    @staticmethod
    def _update_plan(db: Session, plan_uuid: uuid.UUID, payload: Optional[PlanPayload]) -> bool:
        if payload is None:
            return False
        plan = db.get(WorkoutPlan, plan_uuid)
        changes = {
            name: getattr(payload, name)
            for name in ("name", "assignee_id", "is_active")
            if getattr(plan, name) != getattr(payload, name)
        }
        if not changes:
            return False
        _set_fields(plan, changes)
        db.flush()
        return True

    # ---- scoping queries

    @staticmethod
    def _plan_phase_ids(db: Session, plan_uuid, ids=None) -> Set[uuid.UUID]:
        query = select(PlanPhase.id).where(PlanPhase.plan_id == plan_uuid)
        if ids is not None:
            query = query.where(PlanPhase.id.in_(list(ids)))
        return set(db.scalars(query))

    @staticmethod
    def _plan_session_ids(db: Session, plan_uuid, ids=None, phase_ids=None) -> Set[uuid.UUID]:
        query = select(PlanSession.id).join(PlanPhase, PlanSession.phase_id == PlanPhase.id).where(
            PlanPhase.plan_id == plan_uuid
        )
        if ids is not None or phase_ids is not None:
            query = query.where(
                or_(PlanSession.id.in_(list(ids or [])), PlanSession.phase_id.in_(list(phase_ids or [])))
            )
        return set(db.scalars(query))

    @staticmethod
    def _plan_exercise_ids(db: Session, plan_uuid, ids, session_ids) -> Set[uuid.UUID]:
        query = (
            select(PlanExercise.id)
            .join(PlanSession, PlanExercise.session_id == PlanSession.id)
            .join(PlanPhase, PlanSession.phase_id == PlanPhase.id)
            .where(PlanPhase.plan_id == plan_uuid)
            .where(or_(PlanExercise.id.in_(list(ids)), PlanExercise.session_id.in_(list(session_ids))))
        )
        return set(db.scalars(query))

    # ---- deletes

    def _apply_deletes(self, db: Session, plan_uuid, diff: WorkoutPlanChanges) -> int:
        requested = (
            len(diff.deleted.phases) + len(diff.deleted.sessions) + len(diff.deleted.exercises)
        )
        if not requested:
            return 0

        phase_ids = self._plan_phase_ids(db, plan_uuid, _uuids(diff.deleted.phases))
        session_ids = self._plan_session_ids(
            db, plan_uuid, ids=_uuids(diff.deleted.sessions), phase_ids=phase_ids
        )
        exercise_ids = self._plan_exercise_ids(
            db, plan_uuid, _uuids(diff.deleted.exercises), session_ids
        )

        deleted = _delete_ids(db, PlanExercise, exercise_ids)
        deleted += _delete_ids(db, PlanSession, session_ids)
        deleted += _delete_ids(db, PlanPhase, phase_ids)

        if deleted < requested:
            logger.debug(f"Plan {plan_uuid}: some deleted ids were already gone, skipped")
        return deleted

    # ---- updates

    def _apply_updates(self, db: Session, plan_uuid, diff: WorkoutPlanChanges) -> int:
        count = 0

        if diff.updated.phases:
            rows = {
                row.id: row
                for row in db.query(PlanPhase).filter(
                    PlanPhase.plan_id == plan_uuid,
                    PlanPhase.id.in_(_uuids([u.id for u in diff.updated.phases])),
                )
            }
            pairs = [
                (rows[coerce_uuid(u.id)], u.changes.as_dict())
                for u in diff.updated.phases
                if coerce_uuid(u.id) in rows
            ]
            count += _update_ordered_rows(db, pairs)

        if diff.updated.sessions:
            rows = {
                row.id: row
                for row in db.query(PlanSession)
                .join(PlanPhase, PlanSession.phase_id == PlanPhase.id)
                .filter(
                    PlanPhase.plan_id == plan_uuid,
                    PlanSession.id.in_(_uuids([u.id for u in diff.updated.sessions])),
                )
            }
            pairs = [
                (rows[coerce_uuid(u.id)], u.changes.as_dict())
                for u in diff.updated.sessions
                if coerce_uuid(u.id) in rows
            ]
            count += _update_ordered_rows(db, pairs)

        if diff.updated.exercises:
            rows = {
                row.id: row
                for row in db.query(PlanExercise)
                .join(PlanSession, PlanExercise.session_id == PlanSession.id)
                .join(PlanPhase, PlanSession.phase_id == PlanPhase.id)
                .filter(
                    PlanPhase.plan_id == plan_uuid,
                    PlanExercise.id.in_(_uuids([u.id for u in diff.updated.exercises])),
                )
            }
            for u in diff.updated.exercises:
                row = rows.get(coerce_uuid(u.id))
                if row is None:
                    continue
                changes = u.changes.as_dict()
                if "exercise_id" in changes:
                    changes["exercise_id"] = self._library_exercise_id(db, changes["exercise_id"])
                _set_fields(row, changes)
                count += 1
            db.flush()

        skipped = (
            len(diff.updated.phases) + len(diff.updated.sessions) + len(diff.updated.exercises) - count
        )
        if skipped:
            logger.debug(f"Plan {plan_uuid}: skipped {skipped} update(s) for missing ids")
        return count

    @staticmethod
    def _library_exercise_id(db: Session, value: str) -> uuid.UUID:
        exercise_uuid = coerce_uuid(value)
        if exercise_uuid is None or db.get(Exercise, exercise_uuid) is None:
            raise InvalidDiffError(f"Unknown library exercise {value}")
        return exercise_uuid

    # ---- creates

    def _apply_creates(self, db: Session, plan_uuid, diff: WorkoutPlanChanges, id_map: IdMap) -> int:
        count = 0

        for payload in diff.created.phases:
            phase_id = id_map.assign(payload.id)
            existing = db.get(PlanPhase, phase_id)
            if existing is not None:
                if existing.plan_id != plan_uuid:
                    raise InvalidDiffError(f"Phase {payload.id} belongs to another plan")
                continue
            db.add(
                PlanPhase(
                    id=phase_id,
                    plan_id=plan_uuid,
                    name=payload.name,
                    order_number=payload.order_number,
                    is_active=payload.is_active,
                )
            )
            count += 1
        db.flush()

        if diff.created.sessions:
            plan_phases = self._plan_phase_ids(db, plan_uuid)
            for entry in diff.created.sessions:
                parent = id_map.resolve(entry.phase_id)
                if parent is None or parent not in plan_phases:
                    raise InvalidDiffError(
                        f"Session {entry.session.id} references unknown phase {entry.phase_id}"
                    )
                session_id = id_map.assign(entry.session.id)
                existing = db.get(PlanSession, session_id)
                if existing is not None:
                    if existing.phase_id not in plan_phases:
                        raise InvalidDiffError(f"Session {entry.session.id} belongs to another plan")
                    continue
                db.add(
                    PlanSession(
                        id=session_id,
                        phase_id=parent,
                        name=entry.session.name,
                        order_number=entry.session.order_number,
                        session_time=entry.session.session_time,
                    )
                )
                count += 1
            db.flush()

        if diff.created.exercises:
            plan_sessions = self._plan_session_ids(db, plan_uuid)
            for entry in diff.created.exercises:
                parent = id_map.resolve(entry.session_id)
                if parent is None or parent not in plan_sessions:
                    raise InvalidDiffError(
                        f"Exercise {entry.exercise.id} references unknown session {entry.session_id}"
                    )
                exercise_row_id = id_map.assign(entry.exercise.id)
                existing = db.get(PlanExercise, exercise_row_id)
                if existing is not None:
                    if existing.session_id not in plan_sessions:
                        raise InvalidDiffError(f"Exercise {entry.exercise.id} belongs to another plan")
                    continue
                fields = entry.exercise.model_dump(exclude={"id", "exercise_id"})
                db.add(
                    PlanExercise(
                        id=exercise_row_id,
                        session_id=parent,
                        exercise_id=self._library_exercise_id(db, entry.exercise.exercise_id),
                        **fields,
                    )
                )
                count += 1
            db.flush()

        return count


def apply_changes(plan_id, expected_updated_at: TimestampLike, diff) -> ApplyResult:
    """Apply a diff with the default session factory."""
    return DiffApplier().apply(plan_id, expected_updated_at, diff)

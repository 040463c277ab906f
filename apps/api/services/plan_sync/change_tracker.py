"""
Phase tree change detection.

Compares two snapshots of a plan's phase tree and produces the
WorkoutPlanChanges that turns the first into the second:

- entities present only in the new snapshot -> created (with parent id)
- entities present only in the old snapshot -> deleted
- entities in both whose fields differ -> updated, carrying only the
  changed fields

A session (or exercise) keeps the parent it was first seen under; moving
it across parents is not tracked.
"""
from typing import Dict, Iterable, List, Optional, Tuple

from services.plan_sync.diff import (
    ExerciseChanges,
    ExerciseCreate,
    ExerciseUpdate,
    PhaseChanges,
    PhasePayload,
    PhaseUpdate,
    SessionChanges,
    SessionCreate,
    SessionPayload,
    SessionUpdate,
    WorkoutPlanChanges,
)
from services.plan_sync.plan_tree import ExerciseNode, PhaseNode, SessionNode

PHASE_FIELDS = ("name", "order_number", "is_active")
SESSION_FIELDS = ("name", "order_number", "session_time")
EXERCISE_FIELDS = tuple(f for f in ExerciseChanges.model_fields)


def _changed_fields(prev, curr, fields: Iterable[str]) -> Dict:
    return {f: getattr(curr, f) for f in fields if getattr(prev, f) != getattr(curr, f)}


def _index(phases: List[PhaseNode]) -> Tuple[Dict, Dict, Dict]:
    phase_map: Dict[str, PhaseNode] = {}
    session_map: Dict[str, SessionNode] = {}
    exercise_map: Dict[str, ExerciseNode] = {}
    for phase in phases:
        phase_map[phase.id] = phase
        for session in phase.sessions:
            session_map[session.id] = session
            for exercise in session.exercises:
                exercise_map[exercise.id] = exercise
    return phase_map, session_map, exercise_map


def diff_phase_trees(previous: List[PhaseNode], current: List[PhaseNode]) -> WorkoutPlanChanges:
    """Diff two phase trees. Pure; neither input is modified."""
    changes = WorkoutPlanChanges()
    prev_phases, prev_sessions, prev_exercises = _index(previous)
    curr_phases, curr_sessions, curr_exercises = _index(current)

    for phase in current:
        if phase.id not in prev_phases:
            changes.created.phases.append(PhasePayload(**phase.model_dump(exclude={"sessions"})))
        else:
            delta = _changed_fields(prev_phases[phase.id], phase, PHASE_FIELDS)
            if delta:
                changes.updated.phases.append(PhaseUpdate(id=phase.id, changes=PhaseChanges(**delta)))

        for session in phase.sessions:
            if session.id not in prev_sessions:
                changes.created.sessions.append(
                    SessionCreate(
                        phase_id=phase.id,
                        session=SessionPayload(**session.model_dump(exclude={"exercises"})),
                    )
                )
            else:
                delta = _changed_fields(prev_sessions[session.id], session, SESSION_FIELDS)
                if delta:
                    changes.updated.sessions.append(
                        SessionUpdate(id=session.id, changes=SessionChanges(**delta))
                    )

            for exercise in session.exercises:
                if exercise.id not in prev_exercises:
                    changes.created.exercises.append(
                        ExerciseCreate(session_id=session.id, exercise=exercise)
                    )
                else:
                    delta = _changed_fields(prev_exercises[exercise.id], exercise, EXERCISE_FIELDS)
                    if delta:
                        changes.updated.exercises.append(
                            ExerciseUpdate(id=exercise.id, changes=ExerciseChanges(**delta))
                        )

    changes.deleted.phases = [pid for pid in prev_phases if pid not in curr_phases]
    changes.deleted.sessions = [sid for sid in prev_sessions if sid not in curr_sessions]
    changes.deleted.exercises = [eid for eid in prev_exercises if eid not in curr_exercises]
    return changes


class PlanChangeTracker:
    """
    Keeps the last two snapshots of an editor's phase tree.

    Usage:
        tracker = PlanChangeTracker(tree.phases)
        diff = tracker.update_current_state(edited_phases)
        ... send diff ...
        tracker.reset(edited_phases)
    """

    def __init__(self, phases: Optional[List[PhaseNode]] = None):
        self.reset(phases or [])

    @staticmethod
    def _snapshot(phases: List[PhaseNode]) -> List[PhaseNode]:
        return [PhaseNode.model_validate(p).model_copy(deep=True) for p in phases]

    def update_current_state(self, phases: List[PhaseNode]) -> WorkoutPlanChanges:
        """Move the baseline to the last state and diff it against `phases`."""
        self._previous = self._current
        self._current = self._snapshot(phases)
        self._changes = diff_phase_trees(self._previous, self._current)
        return self._changes

    def get_changes(self) -> WorkoutPlanChanges:
        return self._changes

    def reset(self, phases: Optional[List[PhaseNode]] = None):
        """Use `phases` (or the current state) as the clean baseline."""
        baseline = self._snapshot(phases) if phases is not None else self._current
        self._previous = baseline
        self._current = self._snapshot(baseline)
        self._changes = WorkoutPlanChanges()

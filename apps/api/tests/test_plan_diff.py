"""
Tests for the plan diff value object: partition rules, partial changes and
merging of consecutive edits.
"""
import pytest
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import InvalidDiffError
from services.plan_sync.diff import (
    ExerciseChanges,
    ExercisePayload,
    PhaseChanges,
    WorkoutPlanChanges,
    merge_changes,
)


def _diff(**partitions) -> WorkoutPlanChanges:
    return WorkoutPlanChanges.model_validate(partitions)


class TestPartitions:
    def test_empty_diff(self):
        diff = WorkoutPlanChanges()
        assert diff.is_empty()
        assert diff.summary() == {"created": 0, "updated": 0, "deleted": 0}

    def test_plan_payload_alone_is_still_empty(self):
        diff = _diff(plan={"owner_id": "trainer-1"})
        assert diff.is_empty()
        assert diff.plan.name == "Workout Plan"

    def test_summary_counts_every_level(self):
        diff = _diff(
            created={
                "phases": [{"id": "new-phase-1", "name": "Deload", "order_number": 3}],
                "sessions": [{"phase_id": "new-phase-1", "session": {"id": "new-session-1", "name": "Day 1"}}],
            },
            updated={"exercises": [{"id": "e1", "changes": {"notes": "slow eccentric"}}]},
            deleted={"phases": ["p9"], "sessions": ["s9"], "exercises": ["e9"]},
        )
        assert diff.summary() == {"created": 2, "updated": 1, "deleted": 3}
        diff.validate_partitions()

    def test_id_in_two_partitions_is_rejected(self):
        diff = _diff(
            updated={"phases": [{"id": "p1", "changes": {"name": "Renamed"}}]},
            deleted={"phases": ["p1"]},
        )
        with pytest.raises(InvalidDiffError) as e:
            diff.validate_partitions()
        assert "p1" in str(e.value)
        assert e.value.code == "invalid_diff"

    def test_id_twice_in_one_partition_is_rejected(self):
        diff = _diff(deleted={"exercises": ["e1", "e1"]})
        with pytest.raises(InvalidDiffError):
            diff.validate_partitions()

    def test_same_id_at_different_levels_is_allowed(self):
        diff = _diff(deleted={"phases": ["x"], "sessions": ["x"]})
        diff.validate_partitions()


class TestChanges:
    def test_only_sent_fields_are_reported(self):
        changes = ExerciseChanges(reps_min="10", notes=None)
        assert changes.as_dict() == {"reps_min": 10, "notes": None}

    def test_blank_numeric_cell_becomes_null(self):
        changes = ExerciseChanges(sets_max="")
        assert changes.as_dict() == {"sets_max": None}
        assert ExercisePayload(id="e1", exercise_id="lib-1", tut=" ").tut is None

    def test_unknown_field_is_rejected(self):
        with pytest.raises(PydanticValidationError):
            PhaseChanges(colour="red")

    def test_required_field_cannot_be_nulled(self):
        with pytest.raises(PydanticValidationError):
            PhaseChanges(name=None)
        with pytest.raises(PydanticValidationError):
            ExerciseChanges(exercise_id=None)


class TestMerge:
    def test_create_then_delete_cancels_out(self):
        first = _diff(created={"phases": [{"id": "new-phase-1", "name": "Deload"}]})
        second = _diff(deleted={"phases": ["new-phase-1"]})

        merged = merge_changes(first, second)

        assert merged.is_empty()

    def test_create_then_delete_drops_orphaned_children(self):
        first = _diff(
            created={
                "phases": [{"id": "new-phase-1", "name": "Deload"}],
                "sessions": [{"phase_id": "new-phase-1", "session": {"id": "new-session-1", "name": "Day 1"}}],
                "exercises": [{"session_id": "new-session-1", "exercise": {"id": "new-ex-1", "exercise_id": "lib"}}],
            }
        )
        second = _diff(deleted={"phases": ["new-phase-1"]})

        assert merge_changes(first, second).is_empty()

    def test_update_folds_into_create(self):
        first = _diff(created={"phases": [{"id": "new-phase-1", "name": "Deload", "order_number": 3}]})
        second = _diff(updated={"phases": [{"id": "new-phase-1", "changes": {"name": "Recovery"}}]})

        merged = first.merge(second)

        assert merged.updated.phases == []
        assert merged.created.phases[0].name == "Recovery"
        assert merged.created.phases[0].order_number == 3

    def test_updates_combine_and_later_wins(self):
        first = _diff(updated={"exercises": [{"id": "e1", "changes": {"reps_min": 8, "notes": "a"}}]})
        second = _diff(updated={"exercises": [{"id": "e1", "changes": {"notes": "b"}}]})

        merged = merge_changes(first, second)

        assert len(merged.updated.exercises) == 1
        assert merged.updated.exercises[0].changes.as_dict() == {"reps_min": 8, "notes": "b"}

    def test_update_then_delete_keeps_only_delete(self):
        first = _diff(updated={"sessions": [{"id": "s1", "changes": {"name": "Push"}}]})
        second = _diff(deleted={"sessions": ["s1"]})

        merged = merge_changes(first, second)

        assert merged.updated.sessions == []
        assert merged.deleted.sessions == ["s1"]

    def test_delete_then_update_drops_update(self):
        first = _diff(deleted={"sessions": ["s1"]})
        second = _diff(updated={"sessions": [{"id": "s1", "changes": {"name": "Push"}}]})

        merged = merge_changes(first, second)

        assert merged.updated.sessions == []
        assert merged.deleted.sessions == ["s1"]

    def test_delete_then_create_same_id_is_rejected(self):
        first = _diff(deleted={"phases": ["p1"]})
        second = _diff(created={"phases": [{"id": "p1", "name": "Again"}]})

        with pytest.raises(InvalidDiffError):
            merge_changes(first, second)

    def test_later_plan_payload_wins(self):
        first = _diff(plan={"owner_id": "trainer-1", "name": "Old"})
        second = _diff(plan={"owner_id": "trainer-1", "name": "New"})

        assert merge_changes(first, second).plan.name == "New"

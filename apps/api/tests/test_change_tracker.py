"""
Tests for phase tree change detection (editor snapshot -> plan diff).
"""
from services.plan_sync.change_tracker import PlanChangeTracker, diff_phase_trees
from services.plan_sync.plan_tree import PhaseNode, SessionNode


def _phases():
    return [
        PhaseNode.model_validate(
            {
                "id": "p1",
                "name": "Hypertrophy",
                "order_number": 1,
                "is_active": True,
                "sessions": [
                    {
                        "id": "s1",
                        "name": "Day 1",
                        "order_number": 1,
                        "exercises": [{"id": "e1", "exercise_id": "lib-1", "sets_min": 3, "reps_min": 8}],
                    }
                ],
            }
        ),
        PhaseNode(id="p2", name="Strength", order_number=2),
    ]


def test_identical_trees_produce_empty_diff():
    assert diff_phase_trees(_phases(), _phases()).is_empty()


def test_changed_fields_only():
    current = _phases()
    current[0].sessions[0].exercises[0].reps_min = 10
    current[1].name = "Max Strength"

    diff = diff_phase_trees(_phases(), current)

    assert diff.updated.exercises[0].id == "e1"
    assert diff.updated.exercises[0].changes.as_dict() == {"reps_min": 10}
    assert diff.updated.phases[0].changes.as_dict() == {"name": "Max Strength"}
    assert diff.summary() == {"created": 0, "updated": 2, "deleted": 0}


def test_new_session_carries_its_phase():
    current = _phases()
    current[1].sessions.append(
        SessionNode(id="new-session-1", name="Day 1")
    )

    diff = diff_phase_trees(_phases(), current)

    assert len(diff.created.sessions) == 1
    assert diff.created.sessions[0].phase_id == "p2"
    assert diff.created.sessions[0].session.id == "new-session-1"


def test_removed_entities_are_deleted():
    current = _phases()[1:]

    diff = diff_phase_trees(_phases(), current)

    assert diff.deleted.phases == ["p1"]
    assert diff.deleted.sessions == ["s1"]
    assert diff.deleted.exercises == ["e1"]
    diff.validate_partitions()


def test_inputs_are_not_modified():
    previous = _phases()
    current = _phases()
    current[0].name = "Renamed"

    diff_phase_trees(previous, current)

    assert previous[0].name == "Hypertrophy"
    assert current[0].name == "Renamed"


class TestPlanChangeTracker:
    def test_tracks_successive_edits(self):
        tracker = PlanChangeTracker(_phases())
        edited = _phases()
        edited[0].name = "Volume"

        first = tracker.update_current_state(edited)
        assert first.updated.phases[0].changes.as_dict() == {"name": "Volume"}

        # No further edits: the baseline moved, so nothing is reported.
        second = tracker.update_current_state(edited)
        assert second.is_empty()
        assert tracker.get_changes() is second

    def test_snapshots_are_isolated_from_caller_mutation(self):
        tracker = PlanChangeTracker(_phases())
        edited = _phases()
        edited[1].order_number = 5
        tracker.update_current_state(edited)

        edited[1].order_number = 9

        assert tracker.get_changes().updated.phases[0].changes.order_number == 5

    def test_reset_clears_changes(self):
        tracker = PlanChangeTracker(_phases())
        edited = _phases()
        edited[1].name = "Peak"
        tracker.update_current_state(edited)

        tracker.reset()

        assert tracker.get_changes().is_empty()
        assert tracker.update_current_state(edited).is_empty()

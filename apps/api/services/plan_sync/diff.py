"""
Structured diff of a workout plan edit ("WorkoutPlanChanges").

A diff has three partitions - created, updated, deleted - and each partition
holds phases, sessions and exercises:

- created entries carry full payloads plus the parent reference
  (a session create carries its phase_id, an exercise create its session_id).
  Ids in created entries may be client-generated UUIDs or placeholders
  such as "new-phase-1"; the applier maps placeholders to real ids.
- updated entries carry {id, changes} where changes is a partial field set.
- deleted entries are bare ids.

An entity id may appear in at most one partition of a diff.

This module is pure data: no database access.
"""

from __future__ import annotations

from typing import Any, ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from core.exceptions import InvalidDiffError

LEVELS = ("phases", "sessions", "exercises")

_EXERCISE_INT_FIELDS = ("sets_min", "sets_max", "reps_min", "reps_max", "rest_min", "rest_max", "tut")


def _blank_to_none(value: Any) -> Any:
    # The planner grid sends "" for an untouched numeric cell.
    if isinstance(value, str) and not value.strip():
        return None
    return value


# ============ Payloads ============

class PlanPayload(BaseModel):
    """Plan row attributes; present when the diff may need to create the plan."""
    name: str = "Workout Plan"
    owner_id: str
    assignee_id: Optional[str] = None
    is_active: bool = True


class PhasePayload(BaseModel):
    id: str
    name: str
    order_number: int = 0
    is_active: bool = False


class SessionPayload(BaseModel):
    id: str
    name: str
    order_number: int = 0
    session_time: Optional[float] = None


class ExercisePayload(BaseModel):
    id: str
    exercise_id: str  # Library exercise
    order_marker: Optional[str] = None
    target_area: Optional[str] = None
    motion: Optional[str] = None
    description: Optional[str] = None
    sets_min: Optional[int] = None
    sets_max: Optional[int] = None
    reps_min: Optional[int] = None
    reps_max: Optional[int] = None
    rest_min: Optional[int] = None
    rest_max: Optional[int] = None
    tempo: Optional[str] = None
    tut: Optional[int] = None
    customizations: Optional[str] = None
    notes: Optional[str] = None

    blank_ints_to_none = field_validator(*_EXERCISE_INT_FIELDS, mode="before")(_blank_to_none)


# ============ Partial changes ============

class _Changes(BaseModel):
    """Partial field set. Unknown fields are a malformed diff."""
    model_config = ConfigDict(extra="forbid")

    _required: ClassVar[Tuple[str, ...]] = ()

    @model_validator(mode="after")
    def _no_null_required(self):
        for name in self._required:
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def as_dict(self) -> Dict[str, Any]:
        """Only the fields the client actually sent."""
        return self.model_dump(exclude_unset=True)


class PhaseChanges(_Changes):
    _required: ClassVar[Tuple[str, ...]] = ("name", "order_number", "is_active")

    name: Optional[str] = None
    order_number: Optional[int] = None
    is_active: Optional[bool] = None


class SessionChanges(_Changes):
    _required: ClassVar[Tuple[str, ...]] = ("name", "order_number")

    name: Optional[str] = None
    order_number: Optional[int] = None
    session_time: Optional[float] = None


class ExerciseChanges(_Changes):
    _required: ClassVar[Tuple[str, ...]] = ("exercise_id",)

    exercise_id: Optional[str] = None
    order_marker: Optional[str] = None
    target_area: Optional[str] = None
    motion: Optional[str] = None
    description: Optional[str] = None
    sets_min: Optional[int] = None
    sets_max: Optional[int] = None
    reps_min: Optional[int] = None
    reps_max: Optional[int] = None
    rest_min: Optional[int] = None
    rest_max: Optional[int] = None
    tempo: Optional[str] = None
    tut: Optional[int] = None
    customizations: Optional[str] = None
    notes: Optional[str] = None

    blank_ints_to_none = field_validator(*_EXERCISE_INT_FIELDS, mode="before")(_blank_to_none)


# ============ Partition entries ============

class SessionCreate(BaseModel):
    phase_id: str
    session: SessionPayload


class ExerciseCreate(BaseModel):
    session_id: str
    exercise: ExercisePayload


class PhaseUpdate(BaseModel):
    id: str
    changes: PhaseChanges


class SessionUpdate(BaseModel):
    id: str
    changes: SessionChanges


class ExerciseUpdate(BaseModel):
    id: str
    changes: ExerciseChanges


class CreatedChanges(BaseModel):
    phases: List[PhasePayload] = Field(default_factory=list)
    sessions: List[SessionCreate] = Field(default_factory=list)
    exercises: List[ExerciseCreate] = Field(default_factory=list)


class UpdatedChanges(BaseModel):
    phases: List[PhaseUpdate] = Field(default_factory=list)
    sessions: List[SessionUpdate] = Field(default_factory=list)
    exercises: List[ExerciseUpdate] = Field(default_factory=list)


class DeletedChanges(BaseModel):
    phases: List[str] = Field(default_factory=list)
    sessions: List[str] = Field(default_factory=list)
    exercises: List[str] = Field(default_factory=list)


def created_id(level: str, entry: Any) -> str:
    """Id of a created entry at the given level."""
    if level == "phases":
        return entry.id
    if level == "sessions":
        return entry.session.id
    return entry.exercise.id


class WorkoutPlanChanges(BaseModel):
    """The diff value object. Transient, never persisted as such."""

    plan: Optional[PlanPayload] = None
    created: CreatedChanges = Field(default_factory=CreatedChanges)
    updated: UpdatedChanges = Field(default_factory=UpdatedChanges)
    deleted: DeletedChanges = Field(default_factory=DeletedChanges)

    def is_empty(self) -> bool:
        """True when no entity is created, updated or deleted (plan payload ignored)."""
        return not any(
            getattr(partition, level)
            for partition in (self.created, self.updated, self.deleted)
            for level in LEVELS
        )

    def summary(self) -> Dict[str, int]:
        return {
            "created": sum(len(getattr(self.created, level)) for level in LEVELS),
            "updated": sum(len(getattr(self.updated, level)) for level in LEVELS),
            "deleted": sum(len(getattr(self.deleted, level)) for level in LEVELS),
        }

    def validate_partitions(self) -> None:
        """
        Raise InvalidDiffError when an id shows up in more than one partition,
        or twice in the same partition.
        """
        problems: List[str] = []
        for level in LEVELS:
            created = [created_id(level, e) for e in getattr(self.created, level)]
            updated = [u.id for u in getattr(self.updated, level)]
            deleted = list(getattr(self.deleted, level))

            for name, ids in (("created", created), ("updated", updated), ("deleted", deleted)):
                dupes = sorted({i for i in ids if ids.count(i) > 1})
                if dupes:
                    problems.append(f"{level} listed twice in {name}: {', '.join(dupes)}")

            seen: Dict[str, str] = {}
            for name, ids in (("created", created), ("updated", updated), ("deleted", deleted)):
                for entity_id in set(ids):
                    if entity_id in seen:
                        problems.append(f"{level} {entity_id} is both {seen[entity_id]} and {name}")
                    else:
                        seen[entity_id] = name

        if problems:
            raise InvalidDiffError("; ".join(problems))

    def merge(self, later: "WorkoutPlanChanges") -> "WorkoutPlanChanges":
        return merge_changes(self, later)


# ============ Merging ============

def _fold_into_create(level: str, entry: Any, changes: Any) -> Any:
    update = changes.as_dict()
    if level == "phases":
        return entry.model_copy(update=update)
    if level == "sessions":
        return entry.model_copy(update={"session": entry.session.model_copy(update=update)})
    return entry.model_copy(update={"exercise": entry.exercise.model_copy(update=update)})


def _merge_update(earlier: Any, later: Any) -> Any:
    combined = {**earlier.changes.as_dict(), **later.changes.as_dict()}
    return type(earlier)(id=earlier.id, changes=type(earlier.changes)(**combined))


def _parent_ref(level: str, entry: Any) -> Optional[str]:
    if level == "sessions":
        return entry.phase_id
    if level == "exercises":
        return entry.session_id
    return None


def merge_changes(first: WorkoutPlanChanges, second: WorkoutPlanChanges) -> WorkoutPlanChanges:
    """
    Merge two diffs for the same plan, `second` being the later edit.

    Rules per entity id:
    - created then deleted: both disappear (no-op), and so do creates of
      children that hung off the vanished parent
    - created then updated: the changes are folded into the create
    - updated then updated: changes combined, later values win
    - updated then deleted: only the delete survives
    - deleted then updated: the update is dropped
    - deleted then created: rejected, ids are not reusable
    """
    first.validate_partitions()
    second.validate_partitions()

    merged = WorkoutPlanChanges(plan=second.plan or first.plan)
    collapsed: Dict[str, set] = {level: set() for level in LEVELS}

    for index, level in enumerate(LEVELS):
        created = {created_id(level, e): e for e in getattr(first.created, level)}
        updated = {u.id: u for u in getattr(first.updated, level)}
        deleted = dict.fromkeys(getattr(first.deleted, level))

        for entry in getattr(second.created, level):
            entity_id = created_id(level, entry)
            if entity_id in deleted or entity_id in updated:
                raise InvalidDiffError(f"{level} {entity_id} created after it already existed")
            created[entity_id] = entry

        for upd in getattr(second.updated, level):
            if upd.id in deleted:
                continue
            if upd.id in created:
                created[upd.id] = _fold_into_create(level, created[upd.id], upd.changes)
            elif upd.id in updated:
                updated[upd.id] = _merge_update(updated[upd.id], upd)
            else:
                updated[upd.id] = upd

        for entity_id in getattr(second.deleted, level):
            if entity_id in created:
                del created[entity_id]
                collapsed[level].add(entity_id)
                continue
            updated.pop(entity_id, None)
            deleted[entity_id] = None

        if index > 0:
            parent_level = LEVELS[index - 1]
            for entity_id, entry in list(created.items()):
                if _parent_ref(level, entry) in collapsed[parent_level]:
                    del created[entity_id]
                    collapsed[level].add(entity_id)

        setattr(merged.created, level, list(created.values()))
        setattr(merged.updated, level, list(updated.values()))
        setattr(merged.deleted, level, list(deleted))

    return merged

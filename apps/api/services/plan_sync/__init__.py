# Plan Synchronization Engine
#
# Lets a trainer edit a workout plan (plan -> phases -> sessions -> exercises)
# from a device that may be offline, and applies the edits safely against the
# canonical store.
#
# Architecture:
# - Diff model: created / updated / deleted partitions of plan entities
# - Client operation queue: persisted, single-flight, capped backoff
# - Optimistic concurrency guard: updated_at compare, no locks
# - Diff applier: one transaction per diff, placeholder id remapping
# - Background job processor: Celery jobs with dependency-aware retries

from .diff import WorkoutPlanChanges, merge_changes
from .concurrency import GuardResult, GuardStatus, check_and_lock
from .applier import ApplyResult, ApplyStatus, DiffApplier, apply_changes
from .change_tracker import PlanChangeTracker, diff_phase_trees
from .plan_tree import PlanTree, load_plan_tree
from .operation_queue import Operation, OperationQueue, PlanOperationSender, SaveStatus
from .messages import JobEnvelope, JobResult, MessageType
from .processor import PlanSyncProcessor
from .bootstrap import PlanSyncWorker, WorkerRunState

__all__ = [
    # Diff model
    'WorkoutPlanChanges',
    'merge_changes',
    'PlanChangeTracker',
    'diff_phase_trees',

    # Store side
    'GuardResult',
    'GuardStatus',
    'check_and_lock',
    'ApplyResult',
    'ApplyStatus',
    'DiffApplier',
    'apply_changes',
    'PlanTree',
    'load_plan_tree',

    # Client queue
    'Operation',
    'OperationQueue',
    'PlanOperationSender',
    'SaveStatus',

    # Background jobs
    'JobEnvelope',
    'JobResult',
    'MessageType',
    'PlanSyncProcessor',
    'PlanSyncWorker',
    'WorkerRunState',
]

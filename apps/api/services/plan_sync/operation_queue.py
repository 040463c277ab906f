"""
Client Operation Queue

Buffers single-entity edits made on a trainer's device and delivers them to
the apply boundary at least once, surviving reloads and flaky networks.

- enqueue() appends, persists the pending list under the bound session id
  and kicks off a drain
- process_queue() is single-flight: one drain pass at a time per queue
- every operation in a pass is attempted in FIFO order; failures never
  block the operations behind them
- failed operations get retry_count += 1 and are retried after
  min(base * 2^retry_count, cap) ms, computed from the first remaining one
- an operation that fails max_retries times is a terminal failure: dropped
  from the retry list, reported, and kept in the persisted record until
  clear_pending() or retry_failed()
- bind(session_id) rehydrates the persisted record and drains it
- unbind() stops the timer; the persisted record stays for the next bind

All sender exceptions count as retryable here; permanence is only inferred
from the retry cap.
"""
import enum
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from core import events
from core.config import settings
from core.exceptions import OperationSendError, PlanConflictError
from services.plan_sync.applier import ApplyResult, DiffApplier
from services.plan_sync.concurrency import TimestampLike, parse_timestamp
from services.plan_sync.diff import (
    ExerciseChanges,
    ExerciseCreate,
    ExercisePayload,
    ExerciseUpdate,
    WorkoutPlanChanges,
)
from services.plan_sync.offline_cache import MemoryOfflineCache, OfflineCache, backup_key

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class OperationType(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Operation(BaseModel):
    """
    One user-visible edit.

    set_id is the plan exercise row being edited; exercise_id is the library
    exercise (needed on create). data holds the edited fields; a create also
    carries the owning session_id in data.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: OperationType
    exercise_id: Optional[str] = None
    set_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(default_factory=_now_ms)
    retry_count: int = 0


class SaveStatus(str, enum.Enum):
    IDLE = "idle"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay_s: float, fn: Callable[[], None]) -> TimerHandle: ...


class ThreadingScheduler:
    """Backoff timer on a daemon threading.Timer."""

    def call_later(self, delay_s: float, fn: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(delay_s, fn)
        timer.daemon = True
        timer.start()
        return timer


def backoff_delay_ms(retry_count: int, base_ms: int = None, cap_ms: int = None) -> int:
    base_ms = settings.PLAN_SYNC_CLIENT_BASE_DELAY_MS if base_ms is None else base_ms
    cap_ms = settings.PLAN_SYNC_CLIENT_MAX_DELAY_MS if cap_ms is None else cap_ms
    return min(base_ms * (2 ** retry_count), cap_ms)


class OperationQueue:
    def __init__(
        self,
        sender: Callable[[Operation], Any],
        cache: Optional[OfflineCache] = None,
        scheduler: Optional[Scheduler] = None,
        session_id: Optional[str] = None,
        max_retries: int = None,
        on_success: Optional[Callable[[Operation], None]] = None,
        on_error: Optional[Callable[[Operation, Exception], None]] = None,
    ):
        self.sender = sender
        self.cache = cache if cache is not None else MemoryOfflineCache()
        self.scheduler = scheduler or ThreadingScheduler()
        self.max_retries = max_retries or settings.PLAN_SYNC_CLIENT_MAX_RETRIES
        self.on_success = on_success
        self.on_error = on_error

        self._lock = threading.RLock()
        self._pending: List[Operation] = []
        self._failed: List[Operation] = []
        self._processing = False
        self._timer: Optional[TimerHandle] = None
        # Bumped by unbind/clear so an in-flight pass drops its results.
        self._generation = 0

        self.session_id: Optional[str] = None
        self.status = SaveStatus.IDLE

        if session_id:
            self.bind(session_id)

    # ------------------------------------------------------------ state

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def pending_operations(self) -> List[Operation]:
        with self._lock:
            return list(self._pending)

    @property
    def failed_operations(self) -> List[Operation]:
        with self._lock:
            return list(self._failed)

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def has_scheduled_retry(self) -> bool:
        return self._timer is not None

    # ------------------------------------------------------------ session

    def bind(self, session_id: str):
        """Attach to a client session, restore its backup and drain it."""
        with self._lock:
            if self.session_id == session_id:
                return
            if self.session_id is not None:
                self._detach()
            self.session_id = session_id

            record = self.cache.get(backup_key(session_id)) or {}
            restored = [Operation.model_validate(op) for op in record.get("operations", [])]
            failed = [Operation.model_validate(op) for op in record.get("failed", [])]
            known = {op.id for op in restored}
            self._pending = restored + [op for op in self._pending if op.id not in known]
            self._failed = failed
            self._persist()

        if restored:
            logger.info(f"Restored {len(restored)} pending operation(s) for session {session_id}")
        self.process_queue()

    def unbind(self):
        """Stop the backoff timer and detach; the persisted backup is left intact."""
        with self._lock:
            self._detach()
        self._set_status(SaveStatus.IDLE)

    def _detach(self):
        self._cancel_timer()
        self._generation += 1
        self.session_id = None
        self._pending = []
        self._failed = []

    # ------------------------------------------------------------ public ops

    def enqueue(self, operation) -> Operation:
        if not isinstance(operation, Operation):
            operation = Operation.model_validate(operation)
        with self._lock:
            if any(op.id == operation.id for op in self._pending):
                logger.debug(f"Operation {operation.id} already queued, ignoring duplicate")
                return operation
            self._pending.append(operation)
            self._persist()
        self._notify_status()
        self.process_queue()
        return operation

    def save_now(self) -> bool:
        """Drain immediately, skipping any backoff wait. False if nothing ran."""
        with self._lock:
            self._cancel_timer()
        return self.process_queue()

    def retry_failed(self) -> int:
        """Move terminal failures back into the queue with their retry count reset."""
        with self._lock:
            revived = [op.model_copy(update={"retry_count": 0}) for op in self._failed]
            self._failed = []
            self._pending.extend(revived)
            self._persist()
        if revived:
            logger.info(f"Retrying {len(revived)} failed operation(s) for session {self.session_id}")
            self.process_queue()
        return len(revived)

    def clear_pending(self):
        """Discard everything, including terminal failures and the backup."""
        with self._lock:
            self._cancel_timer()
            self._generation += 1
            self._pending = []
            self._failed = []
            if self.session_id:
                self.cache.remove(backup_key(self.session_id))
        self._set_status(SaveStatus.IDLE)

    def process_queue(self) -> bool:
        """Run one drain pass. Returns False when the single-flight guard skipped it."""
        with self._lock:
            if self._processing or not self._pending or not self.session_id:
                return False
            self._processing = True
            self._cancel_timer()
            batch = list(self._pending)
            generation = self._generation
            session_id = self.session_id

        self._set_status(SaveStatus.SAVING)
        saved: List[Operation] = []
        retry: List[Operation] = []
        terminal: List[tuple] = []
        discarded = False

        try:
            for operation in batch:
                try:
                    self.sender(operation)
                    saved.append(operation)
                except Exception as e:
                    failed = operation.model_copy(update={"retry_count": operation.retry_count + 1})
                    if failed.retry_count >= self.max_retries:
                        terminal.append((failed, e))
                    else:
                        logger.warning(
                            f"Operation {operation.id} failed (attempt {failed.retry_count}), will retry: {e}"
                        )
                        retry.append(failed)
        finally:
            # The pending list is merged before the guard drops, so a pass that
            # starts right after this block never sees the batch just sent.
            with self._lock:
                self._processing = False
                if generation != self._generation:
                    discarded = True
                else:
                    attempted = {op.id for op in saved}
                    attempted.update(op.id for op in retry)
                    attempted.update(op.id for op, _ in terminal)
                    self._pending = retry + [op for op in self._pending if op.id not in attempted]
                    self._failed.extend(op for op, _ in terminal)
                    self._persist()
                    if self._pending:
                        delay_ms = backoff_delay_ms(self._pending[0].retry_count)
                        self._timer = self.scheduler.call_later(delay_ms / 1000.0, self._on_timer)
                        logger.info(
                            f"{len(self._pending)} operation(s) pending for session {session_id}, "
                            f"next attempt in {delay_ms}ms"
                        )

        if discarded:
            logger.info(f"Session {session_id} detached during drain; results discarded")
            return True

        for operation in saved:
            self._report_success(operation)
        for operation, error in terminal:
            self._report_failure(operation, error)

        self._set_status(SaveStatus.ERROR if (retry or terminal) else SaveStatus.SAVED)
        return True

    # ------------------------------------------------------------ internals

    def _on_timer(self):
        with self._lock:
            self._timer = None
        self.process_queue()

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _persist(self):
        if not self.session_id:
            return
        key = backup_key(self.session_id)
        if not self._pending and not self._failed:
            self.cache.remove(key)
            return
        self.cache.set(
            key,
            {
                "operations": [op.model_dump(mode="json") for op in self._pending],
                "failed": [op.model_dump(mode="json") for op in self._failed],
                "timestamp": _now_ms(),
                "session_id": self.session_id,
            },
        )

    def _set_status(self, status: SaveStatus):
        self.status = status
        self._notify_status()

    def _notify_status(self):
        events.emit(
            events.EVENT_QUEUE_STATUS_CHANGED,
            session_id=self.session_id,
            status=self.status,
            pending_count=self.pending_count,
        )

    def _report_success(self, operation: Operation):
        events.emit(events.EVENT_OPERATION_SAVED, operation=operation, session_id=self.session_id)
        if self.on_success:
            try:
                self.on_success(operation)
            except Exception as e:
                logger.error(f"on_success callback failed for operation {operation.id}: {e}", exc_info=True)

    def _report_failure(self, operation: Operation, error: Exception):
        logger.error(
            f"Operation {operation.id} ({operation.type.value} {operation.set_id}) failed "
            f"{operation.retry_count} times, giving up: {error}"
        )
        events.emit(
            events.EVENT_OPERATION_FAILED,
            operation=operation,
            error=error,
            session_id=self.session_id,
        )
        if self.on_error:
            try:
                self.on_error(operation, error)
            except Exception as e:
                logger.error(f"on_error callback failed for operation {operation.id}: {e}", exc_info=True)


class PlanOperationSender:
    """
    Delivers queue operations to the Diff Applier, one exercise diff each.

    Tracks the plan's updated_at across successes so consecutive operations
    carry a fresh token. A conflict raises PlanConflictError; the queue
    retries it like any other failure until the cap, then the UI decides.

    Placeholder set ids ("new-set-1") are stored under a generated UUID; the
    sender remembers that mapping from each result and rewrites later
    operations on the same placeholder to the stored id.
    """

    def __init__(self, plan_id, known_updated_at: TimestampLike = None, applier: DiffApplier = None):
        self.plan_id = str(plan_id)
        self.known_updated_at = parse_timestamp(known_updated_at)
        self.applier = applier or DiffApplier()
        self.id_map: Dict[str, str] = {}

    @staticmethod
    def build_diff(operation: Operation, id_map: Optional[Dict[str, str]] = None) -> WorkoutPlanChanges:
        id_map = id_map or {}
        set_id = id_map.get(operation.set_id, operation.set_id)
        diff = WorkoutPlanChanges()
        if operation.type == OperationType.CREATE:
            data = dict(operation.data)
            session_id = data.pop("session_id", None)
            data.pop("id", None)
            if not session_id:
                raise OperationSendError("Create operation is missing session_id", code="invalid_operation")
            data.setdefault("exercise_id", operation.exercise_id)
            diff.created.exercises.append(
                ExerciseCreate(
                    session_id=id_map.get(session_id, session_id),
                    exercise=ExercisePayload(id=set_id, **data),
                )
            )
        elif operation.type == OperationType.UPDATE:
            diff.updated.exercises.append(
                ExerciseUpdate(id=set_id, changes=ExerciseChanges(**operation.data))
            )
        else:
            diff.deleted.exercises.append(set_id)
        return diff

    def __call__(self, operation: Operation) -> ApplyResult:
        try:
            diff = self.build_diff(operation, self.id_map)
        except PydanticValidationError as e:
            raise OperationSendError(f"Invalid operation data: {e}", code="invalid_operation")

        result = self.applier.apply(self.plan_id, self.known_updated_at, diff)
        if result.success:
            self.known_updated_at = result.new_updated_at
            self.id_map.update(result.id_map)
            return result
        if result.conflict:
            raise PlanConflictError(self.plan_id, result.server_updated_at, self.known_updated_at)
        raise OperationSendError(result.error, code=result.error_code, retryable=result.retryable)

    def refresh(self, updated_at: TimestampLike):
        """Adopt a token the user accepted after resolving a conflict."""
        self.known_updated_at = parse_timestamp(updated_at)

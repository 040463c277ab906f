"""
Tests for the client operation queue: persistence, single-flight draining,
capped exponential backoff and terminal failures.

Backoff timers go through the FakeScheduler from conftest, so nothing sleeps;
a test "waits out" a backoff by firing the recorded timer.
"""
import json
import threading

import pytest

from core import events
from core.exceptions import OperationSendError, PlanConflictError
from core.database import SessionLocal
from services.plan_sync.offline_cache import MemoryOfflineCache, RedisOfflineCache, backup_key
from services.plan_sync.operation_queue import (
    Operation,
    OperationQueue,
    OperationType,
    PlanOperationSender,
    SaveStatus,
    backoff_delay_ms,
)
from services.plan_sync.plan_tree import load_plan_tree


class RecordingSender:
    """Sender that fails while `offline` is set."""

    def __init__(self, offline=False):
        self.offline = offline
        self.calls = []

    def __call__(self, operation):
        self.calls.append(operation.id)
        if self.offline:
            raise ConnectionError("network unreachable")
        return {"ok": True}


def _update(op_id, set_id="set-1", **data):
    return Operation(id=op_id, type=OperationType.UPDATE, set_id=set_id, data=data)


class ReleaseHookLock:
    """Re-entrant lock that runs `on_release` once, the next time it is fully released."""

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0
        self.on_release = None

    def __enter__(self):
        self._lock.acquire()
        self._depth += 1
        return self

    def __exit__(self, *exc):
        self._depth -= 1
        self._lock.release()
        if self._depth == 0 and self.on_release is not None:
            hook, self.on_release = self.on_release, None
            hook()


class TestBackoff:
    def test_exponential_with_cap(self):
        assert backoff_delay_ms(0, base_ms=1000, cap_ms=30000) == 1000
        assert backoff_delay_ms(1, base_ms=1000, cap_ms=30000) == 2000
        assert backoff_delay_ms(3, base_ms=1000, cap_ms=30000) == 8000
        assert backoff_delay_ms(10, base_ms=1000, cap_ms=30000) == 30000


class TestQueueBasics:
    def test_successful_enqueue_drains_and_clears_backup(self, scheduler):
        cache = MemoryOfflineCache()
        sender = RecordingSender()
        saved = []
        queue = OperationQueue(sender, cache, scheduler, session_id="session-a", on_success=saved.append)

        queue.enqueue(_update("op-1", reps_min=8))

        assert sender.calls == ["op-1"]
        assert [op.id for op in saved] == ["op-1"]
        assert queue.pending_count == 0
        assert queue.status == SaveStatus.SAVED
        assert cache.get(backup_key("session-a")) is None

    def test_unbound_queue_holds_operations(self, scheduler):
        sender = RecordingSender()
        queue = OperationQueue(sender, MemoryOfflineCache(), scheduler)

        queue.enqueue(_update("op-1"))

        assert sender.calls == []
        assert queue.pending_count == 1
        assert queue.process_queue() is False

    def test_duplicate_operation_ids_are_ignored(self, scheduler):
        sender = RecordingSender(offline=True)
        queue = OperationQueue(sender, MemoryOfflineCache(), scheduler, session_id="s", max_retries=5)

        queue.enqueue(_update("op-1"))
        queue.enqueue(_update("op-1"))

        assert queue.pending_count == 1

    def test_failed_operation_is_persisted_with_retry_count(self, scheduler):
        cache = MemoryOfflineCache()
        queue = OperationQueue(RecordingSender(offline=True), cache, scheduler, session_id="session-a")

        queue.enqueue(_update("op-1", notes="tempo 3-1-1"))

        record = cache.get(backup_key("session-a"))
        assert record["session_id"] == "session-a"
        assert record["operations"][0]["id"] == "op-1"
        assert record["operations"][0]["retry_count"] == 1
        assert record["operations"][0]["data"] == {"notes": "tempo 3-1-1"}
        assert queue.status == SaveStatus.ERROR
        assert scheduler.active[0].delay_s == backoff_delay_ms(1) / 1000.0


class TestOfflineDrain:
    def test_three_offline_updates_all_land_after_reconnect(self, seeded_plan, scheduler):
        cache = MemoryOfflineCache()
        applier_sender = PlanOperationSender(seeded_plan["plan"], seeded_plan["updated_at"])
        network = {"up": False}

        def sender(operation):
            if not network["up"]:
                raise ConnectionError("offline")
            return applier_sender(operation)

        queue = OperationQueue(sender, cache, scheduler, session_id="gym-tablet", max_retries=5)
        set_id = seeded_plan["exercise_1"]
        queue.enqueue(_update("op-1", set_id=set_id, reps_min="6"))
        queue.enqueue(_update("op-2", set_id=set_id, reps_max="8"))
        queue.enqueue(_update("op-3", set_id=set_id, notes="pause at bottom"))

        assert queue.pending_count == 3
        assert len(cache.get(backup_key("gym-tablet"))["operations"]) == 3

        network["up"] = True
        scheduler.fire_next()

        assert queue.pending_count == 0
        assert queue.failed_operations == []
        assert cache.get(backup_key("gym-tablet")) is None

        db = SessionLocal()
        try:
            exercise = load_plan_tree(db, seeded_plan["plan"]).phases[0].sessions[0].exercises[0]
        finally:
            db.close()
        assert exercise.reps_min == 6
        assert exercise.reps_max == 8
        assert exercise.notes == "pause at bottom"

    def test_placeholder_create_then_update_and_delete_hit_stored_row(self, seeded_plan, scheduler):
        sender = PlanOperationSender(seeded_plan["plan"], seeded_plan["updated_at"])
        queue = OperationQueue(sender, MemoryOfflineCache(), scheduler, session_id="gym-tablet")

        queue.enqueue(Operation(
            id="op-1",
            type=OperationType.CREATE,
            set_id="new-set-1",
            exercise_id=seeded_plan["library_exercise"],
            data={"session_id": seeded_plan["session_1"], "order_marker": "B1", "reps_min": 5},
        ))
        queue.enqueue(_update("op-2", set_id="new-set-1", reps_min=12))

        assert queue.pending_count == 0
        assert queue.failed_operations == []
        stored_id = sender.id_map["new-set-1"]

        db = SessionLocal()
        try:
            exercises = load_plan_tree(db, seeded_plan["plan"]).phases[0].sessions[0].exercises
        finally:
            db.close()
        created = [e for e in exercises if e.id == stored_id]
        assert len(created) == 1
        assert created[0].reps_min == 12

        queue.enqueue(Operation(id="op-3", type=OperationType.DELETE, set_id="new-set-1"))

        db = SessionLocal()
        try:
            exercises = load_plan_tree(db, seeded_plan["plan"]).phases[0].sessions[0].exercises
        finally:
            db.close()
        assert [e.id for e in exercises] == [seeded_plan["exercise_1"]]


class TestRetryCap:
    def test_third_failure_is_terminal_and_never_retried_again(self, scheduler):
        cache = MemoryOfflineCache()
        sender = RecordingSender(offline=True)
        errors = []
        failed_events = []
        events.subscribe(events.EVENT_OPERATION_FAILED, lambda **kw: failed_events.append(kw))
        queue = OperationQueue(
            sender, cache, scheduler, session_id="s", max_retries=3,
            on_error=lambda op, err: errors.append((op.id, op.retry_count)),
        )

        queue.enqueue(_update("op-1"))
        scheduler.fire_next()
        scheduler.fire_next()

        assert sender.calls == ["op-1", "op-1", "op-1"]
        assert errors == [("op-1", 3)]
        assert failed_events[0]["operation"].id == "op-1"
        assert queue.pending_count == 0
        assert [op.id for op in queue.failed_operations] == ["op-1"]
        assert scheduler.active == []
        assert queue.has_scheduled_retry is False

        # Nothing left to drive a 4th attempt.
        assert queue.process_queue() is False
        assert len(sender.calls) == 3

        record = cache.get(backup_key("s"))
        assert record["operations"] == []
        assert record["failed"][0]["id"] == "op-1"

    def test_failures_do_not_block_later_operations(self, scheduler):
        def sender(operation):
            if operation.id == "bad":
                raise ValueError("rejected")

        saved = []
        queue = OperationQueue(sender, MemoryOfflineCache(), scheduler, session_id="s", on_success=saved.append)
        queue.enqueue(_update("bad"))
        queue.enqueue(_update("good"))

        assert [op.id for op in saved] == ["good"]
        assert [op.id for op in queue.pending_operations] == ["bad"]

    def test_retry_failed_resets_retry_count(self, scheduler):
        sender = RecordingSender(offline=True)
        queue = OperationQueue(sender, MemoryOfflineCache(), scheduler, session_id="s", max_retries=1)
        queue.enqueue(_update("op-1"))
        assert len(queue.failed_operations) == 1

        sender.offline = False
        assert queue.retry_failed() == 1

        assert queue.failed_operations == []
        assert queue.pending_count == 0
        assert sender.calls == ["op-1", "op-1"]

    def test_save_now_skips_the_backoff_wait(self, scheduler):
        sender = RecordingSender(offline=True)
        queue = OperationQueue(sender, MemoryOfflineCache(), scheduler, session_id="s")
        queue.enqueue(_update("op-1"))
        timer = scheduler.active[0]

        sender.offline = False
        assert queue.save_now() is True

        assert timer.cancelled
        assert queue.pending_count == 0


class TestSingleFlight:
    def test_reentrant_drain_is_skipped(self, scheduler):
        nested = []
        queue = None

        def sender(operation):
            nested.append(queue.process_queue())
            if operation.id == "op-1":
                queue.enqueue(_update("op-2"))

        queue = OperationQueue(sender, MemoryOfflineCache(), scheduler, session_id="s")
        queue.enqueue(_update("op-1"))

        assert nested == [False]
        assert queue.is_processing is False
        # op-2 arrived mid-pass: kept, not lost, and picked up by the next pass.
        assert [op.id for op in queue.pending_operations] == ["op-2"]
        assert queue.has_scheduled_retry

        scheduler.fire_next()
        assert queue.pending_count == 0

    def test_drain_started_as_guard_drops_does_not_resend_batch(self, scheduler):
        calls = []
        reentered = []
        lock = ReleaseHookLock()
        queue = None

        def sender(operation):
            calls.append(operation.id)
            lock.on_release = lambda: reentered.append(queue.process_queue())

        queue = OperationQueue(sender, MemoryOfflineCache(), scheduler, session_id="s")
        queue._lock = lock
        queue.enqueue(_update("op-1"))

        assert calls == ["op-1"]
        assert reentered == [False]
        assert queue.pending_count == 0
        assert queue.is_processing is False
        assert scheduler.active == []


class TestSessionBinding:
    def test_bind_rehydrates_and_drains(self, scheduler):
        cache = MemoryOfflineCache()
        cache.set(
            backup_key("session-a"),
            {
                "operations": [
                    _update("op-1").model_dump(mode="json"),
                    _update("op-2").model_dump(mode="json"),
                ],
                "failed": [],
                "timestamp": 0,
                "session_id": "session-a",
            },
        )
        sender = RecordingSender()
        queue = OperationQueue(sender, cache, scheduler)

        queue.bind("session-a")

        assert sender.calls == ["op-1", "op-2"]
        assert cache.get(backup_key("session-a")) is None

    def test_sessions_do_not_share_backups(self, scheduler):
        cache = MemoryOfflineCache()
        queue = OperationQueue(RecordingSender(offline=True), cache, scheduler, session_id="session-a")
        queue.enqueue(_update("op-1"))

        other = OperationQueue(RecordingSender(), cache, scheduler, session_id="session-b")

        assert other.pending_count == 0
        assert cache.get(backup_key("session-a")) is not None

    def test_unbind_stops_timer_and_keeps_backup(self, scheduler):
        cache = MemoryOfflineCache()
        queue = OperationQueue(RecordingSender(offline=True), cache, scheduler, session_id="session-a")
        queue.enqueue(_update("op-1"))
        timer = scheduler.active[0]

        queue.unbind()

        assert timer.cancelled
        assert queue.pending_count == 0
        assert queue.session_id is None
        assert cache.get(backup_key("session-a"))["operations"][0]["id"] == "op-1"

        sender = RecordingSender()
        revived = OperationQueue(sender, cache, scheduler, session_id="session-a")
        assert sender.calls == ["op-1"]
        assert revived.pending_count == 0

    def test_clear_pending_drops_backup(self, scheduler):
        cache = MemoryOfflineCache()
        queue = OperationQueue(RecordingSender(offline=True), cache, scheduler, session_id="s", max_retries=1)
        queue.enqueue(_update("op-1"))
        queue.enqueue(_update("op-2"))

        queue.clear_pending()

        assert queue.pending_count == 0
        assert queue.failed_operations == []
        assert cache.get(backup_key("s")) is None
        assert queue.status == SaveStatus.IDLE


class TestPlanOperationSender:
    def test_create_requires_session_id(self):
        op = Operation(type=OperationType.CREATE, set_id="new-exercise-1", exercise_id="lib", data={})
        with pytest.raises(OperationSendError) as e:
            PlanOperationSender.build_diff(op)
        assert e.value.code == "invalid_operation"

    def test_create_builds_exercise_create(self):
        op = Operation(
            type=OperationType.CREATE,
            set_id="new-exercise-1",
            exercise_id="lib-1",
            data={"session_id": "s1", "id": "ignored", "sets_min": "3"},
        )

        diff = PlanOperationSender.build_diff(op)

        entry = diff.created.exercises[0]
        assert entry.session_id == "s1"
        assert entry.exercise.id == "new-exercise-1"
        assert entry.exercise.exercise_id == "lib-1"
        assert entry.exercise.sets_min == 3

    def test_delete_builds_delete(self):
        diff = PlanOperationSender.build_diff(Operation(type=OperationType.DELETE, set_id="e1"))
        assert diff.deleted.exercises == ["e1"]

    def test_create_returns_mapped_id_and_refreshes_token(self, seeded_plan):
        sender = PlanOperationSender(seeded_plan["plan"], seeded_plan["updated_at"])
        op = Operation(
            type=OperationType.CREATE,
            set_id="new-exercise-1",
            exercise_id=seeded_plan["library_exercise"],
            data={"session_id": seeded_plan["session_1"], "order_marker": "B1"},
        )

        result = sender(op)

        assert "new-exercise-1" in result.id_map
        assert sender.known_updated_at == result.new_updated_at

    def test_stale_token_raises_conflict(self, seeded_plan):
        stale = PlanOperationSender(seeded_plan["plan"], seeded_plan["updated_at"])
        fresh = PlanOperationSender(seeded_plan["plan"], seeded_plan["updated_at"])
        fresh(_update("op-1", set_id=seeded_plan["exercise_1"], notes="first"))

        with pytest.raises(PlanConflictError) as e:
            stale(_update("op-2", set_id=seeded_plan["exercise_1"], notes="second"))
        assert e.value.server_updated_at == fresh.known_updated_at

        stale.refresh(e.value.server_updated_at)
        stale(_update("op-3", set_id=seeded_plan["exercise_1"], notes="second"))

    def test_invalid_update_data_is_rejected(self, seeded_plan):
        sender = PlanOperationSender(seeded_plan["plan"])
        with pytest.raises(OperationSendError):
            sender(_update("op-1", set_id=seeded_plan["exercise_1"], bogus_field=1))


class TestRedisOfflineCache:
    def test_round_trip_with_ttl(self, fake_redis):
        cache = RedisOfflineCache(ttl_s=60)

        cache.set(backup_key("s"), {"operations": [], "failed": [], "session_id": "s"})

        assert cache.get(backup_key("s"))["session_id"] == "s"
        assert fake_redis._ttls[backup_key("s")] == 60
        cache.remove(backup_key("s"))
        assert cache.get(backup_key("s")) is None

    def test_corrupt_entry_is_discarded(self, fake_redis):
        fake_redis.setex(backup_key("s"), 60, "{not json")

        assert RedisOfflineCache().get(backup_key("s")) is None
        assert not fake_redis.exists(backup_key("s"))

    def test_queue_persists_through_redis(self, fake_redis, scheduler):
        queue = OperationQueue(RecordingSender(offline=True), RedisOfflineCache(), scheduler, session_id="s")
        queue.enqueue(_update("op-1"))

        stored = json.loads(fake_redis.get(backup_key("s")))
        assert stored["operations"][0]["id"] == "op-1"

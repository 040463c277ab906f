"""
Pytest configuration and fixtures

Every test runs against a fresh in-memory SQLite store (schema rebuilt per
test) and an in-memory FakeRedis, so nothing leaks between tests and no
external service is needed.
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest

# Must be set before core.config is imported anywhere.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = "redis://localhost:6399/0"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["LOG_FORMAT"] = "text"
os.environ["AUTO_START_WORKER"] = "false"

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core import cache, events  # noqa: E402
from core.database import Base, SessionLocal, engine, transaction  # noqa: E402
from models import Exercise, PlanExercise, PlanPhase, PlanSession, WorkoutPlan  # noqa: E402


class FakeRedis:
    """Minimal in-memory Redis mock for unit tests."""

    def __init__(self):
        self._store: dict = {}
        self._ttls: dict = {}

    def get(self, key):
        return self._store.get(key)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self._store:
            return False
        self._store[key] = value
        if ex:
            self._ttls[key] = ex
        return True

    def setex(self, key, ttl, value):
        self._store[key] = value
        self._ttls[key] = ttl

    def delete(self, *keys):
        for k in keys:
            self._store.pop(k, None)
            self._ttls.pop(k, None)

    def exists(self, key):
        return key in self._store

    def ping(self):
        return True


class FakeTimer:
    def __init__(self, delay_s, fn):
        self.delay_s = delay_s
        self.fn = fn
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Records backoff timers instead of sleeping; tests fire them by hand."""

    def __init__(self):
        self.timers = []

    def call_later(self, delay_s, fn):
        timer = FakeTimer(delay_s, fn)
        self.timers.append(timer)
        return timer

    @property
    def active(self):
        return [t for t in self.timers if not t.cancelled]

    def fire_next(self):
        timer = self.active[0]
        timer.cancelled = True
        timer.fn()
        return timer


@pytest.fixture(autouse=True)
def _fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    """Patch the shared Redis client with an in-memory fake."""
    r = FakeRedis()
    monkeypatch.setattr(cache, "_redis_client", r)
    return r


@pytest.fixture(autouse=True)
def _clear_event_handlers():
    events.clear_handlers()
    yield
    events.clear_handlers()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def db_session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def library_exercise():
    """A library exercise row plan exercises can reference."""
    exercise_id = uuid4()
    with transaction() as db:
        db.add(Exercise(id=exercise_id, name="Back Squat", motion="squat", target_area="legs"))
    return str(exercise_id)


@pytest.fixture
def seeded_plan(library_exercise):
    """
    Plan with two phases; phase 1 has one session holding one exercise.

    Returns a dict of string ids plus the plan's updated_at (t0).
    """
    ids = {
        "plan": uuid4(),
        "phase_1": uuid4(),
        "phase_2": uuid4(),
        "session_1": uuid4(),
        "exercise_1": uuid4(),
    }
    t0 = datetime.now(timezone.utc) - timedelta(minutes=5)
    with transaction() as db:
        db.add(WorkoutPlan(id=ids["plan"], name="Strength Block", owner_id="trainer-1",
                           assignee_id="client-1", is_active=True, updated_at=t0))
        db.flush()
        db.add(PlanPhase(id=ids["phase_1"], plan_id=ids["plan"], name="Hypertrophy", order_number=1, is_active=True))
        db.add(PlanPhase(id=ids["phase_2"], plan_id=ids["plan"], name="Strength", order_number=2))
        db.flush()
        db.add(PlanSession(id=ids["session_1"], phase_id=ids["phase_1"], name="Day 1", order_number=1,
                           session_time=60.0))
        db.flush()
        db.add(PlanExercise(id=ids["exercise_1"], session_id=ids["session_1"], exercise_id=UUID(library_exercise),
                            order_marker="A1", sets_min=3, sets_max=4, reps_min=8, reps_max=10))

    seeded = {name: str(value) for name, value in ids.items()}
    seeded["library_exercise"] = library_exercise
    seeded["updated_at"] = t0
    return seeded

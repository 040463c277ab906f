"""
Optimistic Concurrency Guard

A plan's updated_at is its only concurrency token. Writers read it, compare
it with the timestamp the client last saw, and write it back with a
compare-and-set. Nothing is ever locked.

Rules:
- stored updated_at strictly greater than the client's -> conflict
- equal timestamps are NOT a conflict (clock-resolution ties)
- no client timestamp -> no check (first save, or an explicit overwrite)
- plan row missing -> needs_creation, never conflict
"""
import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models import WorkoutPlan

logger = logging.getLogger(__name__)

TimestampLike = Union[datetime, str, None]


class GuardStatus(str, enum.Enum):
    OK = "ok"
    NEEDS_CREATION = "needs_creation"
    CONFLICT = "conflict"


@dataclass
class GuardResult:
    status: GuardStatus
    plan_id: str
    server_updated_at: Optional[datetime] = None
    client_updated_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.status == GuardStatus.OK

    @property
    def conflict(self) -> bool:
        return self.status == GuardStatus.CONFLICT

    @property
    def needs_creation(self) -> bool:
        return self.status == GuardStatus.NEEDS_CREATION


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: TimestampLike) -> Optional[datetime]:
    """Accept a datetime or an ISO-8601 string (trailing "Z" allowed)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def coerce_uuid(value) -> Optional[uuid.UUID]:
    """UUID for a stored-entity id, or None for placeholders like "new-phase-1"."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def next_updated_at(previous: Optional[datetime] = None) -> datetime:
    """
    The next concurrency token for a plan.

    Wall-clock now, unless the clock has not moved past the previous stamp
    (same microsecond or clock skew), in which case previous + 1us.
    """
    now = datetime.now(timezone.utc)
    previous = ensure_utc(previous)
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def read_updated_at(db: Session, plan_id) -> Optional[datetime]:
    plan_uuid = coerce_uuid(plan_id)
    if plan_uuid is None:
        return None
    value = db.execute(
        select(WorkoutPlan.updated_at).where(WorkoutPlan.id == plan_uuid)
    ).scalar_one_or_none()
    return ensure_utc(value)


def check_and_lock(db: Session, plan_id, client_known_updated_at: TimestampLike = None) -> GuardResult:
    """
    Compare the client's last known updated_at with the stored one.

    The "lock" is released implicitly when the applier stamps a new
    updated_at with stamp_plan(); there is no lock object.
    """
    client_ts = parse_timestamp(client_known_updated_at)
    server_ts = read_updated_at(db, plan_id)

    if server_ts is None:
        return GuardResult(GuardStatus.NEEDS_CREATION, str(plan_id), client_updated_at=client_ts)

    if client_ts is not None and server_ts > client_ts:
        logger.warning(
            f"Plan {plan_id} modified since client fetch "
            f"(server={server_ts.isoformat()}, client={client_ts.isoformat()})"
        )
        return GuardResult(GuardStatus.CONFLICT, str(plan_id), server_ts, client_ts)

    return GuardResult(GuardStatus.OK, str(plan_id), server_ts, client_ts)


def stamp_plan(db: Session, plan_id, observed_updated_at: datetime, new_updated_at: datetime) -> bool:
    """
    Compare-and-set the plan's updated_at.

    Returns False when another writer moved the token after it was observed;
    the caller must roll back and report a conflict.
    """
    plan_uuid = coerce_uuid(plan_id)
    result = db.execute(
        update(WorkoutPlan)
        .where(WorkoutPlan.id == plan_uuid, WorkoutPlan.updated_at == observed_updated_at)
        .values(updated_at=new_updated_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1

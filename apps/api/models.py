from sqlalchemy import Column, Integer, Boolean, Float, DateTime, ForeignKey, Text, Index, UniqueConstraint, JSON, Uuid
from sqlalchemy.orm import relationship
from core.database import Base
import uuid
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Exercise(Base):
    """
    Library exercise.

    Owned by the exercise-library screens; the plan sync engine only
    references these rows from PlanExercise.
    """
    __tablename__ = "exercise"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    motion = Column(Text, nullable=True)
    target_area = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class WorkoutPlan(Base):
    """
    Root aggregate of a client's workout plan.

    updated_at is the plan's concurrency token. It is written explicitly by
    the diff applier (no onupdate hook) and must strictly increase on every
    accepted mutation of the plan or anything below it.

    Plans are never deleted by the sync engine; they are deactivated.
    """
    __tablename__ = "workout_plan"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    owner_id = Column(Text, nullable=False)  # Assigning trainer (user id)
    assignee_id = Column(Text, nullable=True)  # Client the plan belongs to
    is_active = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    phases = relationship(
        "PlanPhase",
        back_populates="plan",
        order_by="PlanPhase.order_number",
    )

    __table_args__ = (
        Index("ix_workout_plan_owner_id", "owner_id"),
        Index("ix_workout_plan_assignee_id", "assignee_id"),
        Index("ix_workout_plan_is_active", "is_active"),
    )


class PlanPhase(Base):
    """A block of training (e.g. "Hypertrophy 1") inside a plan."""
    __tablename__ = "plan_phase"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    plan_id = Column(Uuid, ForeignKey("workout_plan.id"), nullable=False)
    name = Column(Text, nullable=False)
    order_number = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=False, nullable=False)

    plan = relationship("WorkoutPlan", back_populates="phases")
    sessions = relationship(
        "PlanSession",
        back_populates="phase",
        order_by="PlanSession.order_number",
    )

    __table_args__ = (
        UniqueConstraint("plan_id", "order_number", name="uq_plan_phase_plan_order"),
        Index("ix_plan_phase_plan_id", "plan_id"),
        Index("ix_plan_phase_is_active", "is_active"),
    )


class PlanSession(Base):
    """A training day/session inside a phase."""
    __tablename__ = "plan_session"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    phase_id = Column(Uuid, ForeignKey("plan_phase.id"), nullable=False)
    name = Column(Text, nullable=False)
    order_number = Column(Integer, nullable=False)
    session_time = Column(Float, nullable=True)  # Planned duration in minutes

    phase = relationship("PlanPhase", back_populates="sessions")
    exercises = relationship(
        "PlanExercise",
        back_populates="session",
        order_by="PlanExercise.order_marker",
    )

    __table_args__ = (
        UniqueConstraint("phase_id", "order_number", name="uq_plan_session_phase_order"),
        Index("ix_plan_session_phase_id", "phase_id"),
    )


class PlanExercise(Base):
    """
    A prescribed exercise inside a session.

    Ranges are stored as integers; the client sends strings ("8") and the
    diff model coerces them.
    """
    __tablename__ = "plan_exercise"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid, ForeignKey("plan_session.id"), nullable=False)
    exercise_id = Column(Uuid, ForeignKey("exercise.id"), nullable=False)

    order_marker = Column(Text, nullable=True)  # e.g. "A1", "B2" (superset marker)
    target_area = Column(Text, nullable=True)
    motion = Column(Text, nullable=True)
    description = Column(Text, nullable=True)

    sets_min = Column(Integer, nullable=True)
    sets_max = Column(Integer, nullable=True)
    reps_min = Column(Integer, nullable=True)
    reps_max = Column(Integer, nullable=True)
    rest_min = Column(Integer, nullable=True)  # Seconds
    rest_max = Column(Integer, nullable=True)
    tempo = Column(Text, nullable=True)  # e.g. "3-1-1-0"
    tut = Column(Integer, nullable=True)  # Time under tension, seconds

    customizations = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    session = relationship("PlanSession", back_populates="exercises")
    exercise = relationship("Exercise")

    __table_args__ = (
        Index("ix_plan_exercise_session_id", "session_id"),
        Index("ix_plan_exercise_exercise_id", "exercise_id"),
    )


class PlanSyncJob(Base):
    """
    Durable record of one background plan-sync job.

    The broker holds the message; this row holds what operators and clients
    need to see: status, attempts, last error, final result.

    Status values: 'queued', 'running', 'retrying', 'completed', 'failed'.
    """
    __tablename__ = "plan_sync_job"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    task_id = Column(Text, nullable=True)  # Celery task id
    # No FK: a job may legitimately reference a plan that does not exist yet.
    plan_id = Column(Uuid, nullable=True)
    message_type = Column(Text, nullable=False)
    status = Column(Text, default="queued", nullable=False)

    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, nullable=False)

    payload = Column(JSON, nullable=False)
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_plan_sync_job_status", "status"),
        Index("ix_plan_sync_job_plan_id", "plan_id"),
        Index("ix_plan_sync_job_created_at", "created_at"),
    )

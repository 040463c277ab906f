"""plan sync schema

Revision ID: 001
Revises: 
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Library exercises (owned by the exercise-library screens)
    op.create_table(
        'exercise',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('motion', sa.Text(), nullable=True),
        sa.Column('target_area', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    )

    # Plan root; updated_at is the optimistic concurrency token
    op.create_table(
        'workout_plan',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('owner_id', sa.Text(), nullable=False),
        sa.Column('assignee_id', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    )
    op.create_index('ix_workout_plan_owner_id', 'workout_plan', ['owner_id'])
    op.create_index('ix_workout_plan_assignee_id', 'workout_plan', ['assignee_id'])
    op.create_index('ix_workout_plan_is_active', 'workout_plan', ['is_active'])

    op.create_table(
        'plan_phase',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('plan_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('order_number', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.ForeignKeyConstraint(['plan_id'], ['workout_plan.id'], ),
        sa.UniqueConstraint('plan_id', 'order_number', name='uq_plan_phase_plan_order'),
    )
    op.create_index('ix_plan_phase_plan_id', 'plan_phase', ['plan_id'])
    op.create_index('ix_plan_phase_is_active', 'plan_phase', ['is_active'])

    op.create_table(
        'plan_session',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('phase_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('order_number', sa.Integer(), nullable=False),
        sa.Column('session_time', sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(['phase_id'], ['plan_phase.id'], ),
        sa.UniqueConstraint('phase_id', 'order_number', name='uq_plan_session_phase_order'),
    )
    op.create_index('ix_plan_session_phase_id', 'plan_session', ['phase_id'])

    op.create_table(
        'plan_exercise',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('session_id', sa.Uuid(), nullable=False),
        sa.Column('exercise_id', sa.Uuid(), nullable=False),
        sa.Column('order_marker', sa.Text(), nullable=True),
        sa.Column('target_area', sa.Text(), nullable=True),
        sa.Column('motion', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('sets_min', sa.Integer(), nullable=True),
        sa.Column('sets_max', sa.Integer(), nullable=True),
        sa.Column('reps_min', sa.Integer(), nullable=True),
        sa.Column('reps_max', sa.Integer(), nullable=True),
        sa.Column('rest_min', sa.Integer(), nullable=True),
        sa.Column('rest_max', sa.Integer(), nullable=True),
        sa.Column('tempo', sa.Text(), nullable=True),
        sa.Column('tut', sa.Integer(), nullable=True),
        sa.Column('customizations', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['session_id'], ['plan_session.id'], ),
        sa.ForeignKeyConstraint(['exercise_id'], ['exercise.id'], ),
    )
    op.create_index('ix_plan_exercise_session_id', 'plan_exercise', ['session_id'])
    op.create_index('ix_plan_exercise_exercise_id', 'plan_exercise', ['exercise_id'])

    # Background job records (no FK on plan_id: jobs may precede their plan)
    op.create_table(
        'plan_sync_job',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('task_id', sa.Text(), nullable=True),
        sa.Column('plan_id', sa.Uuid(), nullable=True),
        sa.Column('message_type', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), server_default='queued', nullable=False),
        sa.Column('attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_plan_sync_job_status', 'plan_sync_job', ['status'])
    op.create_index('ix_plan_sync_job_plan_id', 'plan_sync_job', ['plan_id'])
    op.create_index('ix_plan_sync_job_created_at', 'plan_sync_job', ['created_at'])


def downgrade() -> None:
    op.drop_table('plan_sync_job')
    op.drop_table('plan_exercise')
    op.drop_table('plan_session')
    op.drop_table('plan_phase')
    op.drop_table('workout_plan')
    op.drop_table('exercise')

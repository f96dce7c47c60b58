"""Create x2a projects, modules, jobs and artifacts tables

Revision ID: 0001_create_x2a_tables
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_create_x2a_tables'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_JOB_STATUS_SQL = "status IN ('pending', 'running')"


def upgrade() -> None:
    """Upgrade schema - create the migration pipeline tables."""

    op.create_table(
        'projects',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('abbreviation', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('source_repo_url', sa.String(500), nullable=False),
        sa.Column('source_repo_branch', sa.String(), nullable=False),
        sa.Column('target_repo_url', sa.String(500), nullable=False),
        sa.Column('target_repo_branch', sa.String(), nullable=False),
        sa.Column('created_by', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_projects_id', 'projects', ['id'])
    op.create_index('ix_projects_created_by', 'projects', ['created_by'])

    op.create_table(
        'modules',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('source_path', sa.String(), nullable=False),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
    )
    op.create_index('ix_modules_id', 'modules', ['id'])
    op.create_index('ix_modules_project_id', 'modules', ['project_id'])

    op.create_table(
        'jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
        sa.Column('module_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('modules.id', ondelete='CASCADE'), nullable=True),
        sa.Column('phase', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('k8s_job_name', sa.String(), nullable=True),
        sa.Column('callback_token', sa.String(), nullable=True),
        sa.Column('error_details', sa.Text(), nullable=True),
        sa.Column('log', sa.Text(), nullable=True),
        sa.Column('telemetry', sa.JSON(), nullable=True),
    )
    op.create_index('ix_jobs_id', 'jobs', ['id'])
    op.create_index('ix_jobs_project_id', 'jobs', ['project_id'])
    op.create_index('ix_jobs_module_id', 'jobs', ['module_id'])
    op.create_index('ix_jobs_project_phase_started', 'jobs', ['project_id', 'phase', 'started_at'])

    # At most one pending/running job per module, and one init job per project
    op.create_index(
        'uq_jobs_active_module', 'jobs', ['module_id'], unique=True,
        postgresql_where=sa.text(f"module_id IS NOT NULL AND {ACTIVE_JOB_STATUS_SQL}"),
        sqlite_where=sa.text(f"module_id IS NOT NULL AND {ACTIVE_JOB_STATUS_SQL}"),
    )
    op.create_index(
        'uq_jobs_active_init', 'jobs', ['project_id'], unique=True,
        postgresql_where=sa.text(f"module_id IS NULL AND {ACTIVE_JOB_STATUS_SQL}"),
        sqlite_where=sa.text(f"module_id IS NULL AND {ACTIVE_JOB_STATUS_SQL}"),
    )

    op.create_table(
        'artifacts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('job_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('jobs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_index('ix_artifacts_id', 'artifacts', ['id'])
    op.create_index('ix_artifacts_job_id', 'artifacts', ['job_id'])


def downgrade() -> None:
    """Downgrade schema - drop the migration pipeline tables."""
    op.drop_index('ix_artifacts_job_id', table_name='artifacts')
    op.drop_index('ix_artifacts_id', table_name='artifacts')
    op.drop_table('artifacts')

    op.drop_index('uq_jobs_active_init', table_name='jobs')
    op.drop_index('uq_jobs_active_module', table_name='jobs')
    op.drop_index('ix_jobs_project_phase_started', table_name='jobs')
    op.drop_index('ix_jobs_module_id', table_name='jobs')
    op.drop_index('ix_jobs_project_id', table_name='jobs')
    op.drop_index('ix_jobs_id', table_name='jobs')
    op.drop_table('jobs')

    op.drop_index('ix_modules_project_id', table_name='modules')
    op.drop_index('ix_modules_id', table_name='modules')
    op.drop_table('modules')

    op.drop_index('ix_projects_created_by', table_name='projects')
    op.drop_index('ix_projects_id', table_name='projects')
    op.drop_table('projects')

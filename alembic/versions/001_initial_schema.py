"""initial_scan_queue_schema

Revision ID: 001
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


scan_status = sa.Enum(
    'queued', 'starting', 'crawling', 'analyzing', 'generating_report', 'completed', 'failed',
    name='scanstatus',
)
scan_job_status = sa.Enum('pending', 'claimed', 'processing', 'done', 'failed', name='scanjobstatus')
violation_severity = sa.Enum('critical', 'serious', 'moderate', 'minor', name='violationseverity')
legal_risk = sa.Enum('high', 'medium', 'low', name='legalrisk')


def upgrade() -> None:
    """Upgrade schema."""
    # Create scans table
    op.create_table(
        'scans',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('url', sa.String(2048), nullable=False),
        sa.Column('domain', sa.String(255), nullable=False),
        sa.Column('org_id', sa.String(), nullable=False),
        sa.Column('tier', sa.String(32), nullable=False),
        sa.Column('depth', sa.String(16), nullable=False),
        sa.Column('status', scan_status, nullable=False),
        sa.Column('wcag_score', sa.Integer(), nullable=True),
        sa.Column('risk_score', sa.Integer(), nullable=True),
        sa.Column('lawsuit_probability', sa.Float(), nullable=True),
        sa.Column('total_violations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('critical_violations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('serious_violations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('moderate_violations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('minor_violations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pages_scanned', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('summary', sa.JSON(), nullable=True),
        sa.Column('processing_time_ms', sa.Integer(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_scans_id'), 'scans', ['id'], unique=False)
    op.create_index(op.f('ix_scans_domain'), 'scans', ['domain'], unique=False)
    op.create_index(op.f('ix_scans_org_id'), 'scans', ['org_id'], unique=False)
    op.create_index(op.f('ix_scans_status'), 'scans', ['status'], unique=False)
    op.create_index('idx_scans_org_created', 'scans', ['org_id', 'created_at'], unique=False)

    # Create scan_jobs table (the work queue)
    op.create_table(
        'scan_jobs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('scan_id', sa.String(), nullable=False),
        sa.Column('url', sa.String(2048), nullable=False),
        sa.Column('tier', sa.String(32), nullable=False),
        sa.Column('depth', sa.String(16), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', scan_job_status, nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('worker_id', sa.String(255), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['scan_id'], ['scans.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('scan_id'),
    )
    op.create_index(op.f('ix_scan_jobs_id'), 'scan_jobs', ['id'], unique=False)
    op.create_index(op.f('ix_scan_jobs_scan_id'), 'scan_jobs', ['scan_id'], unique=False)
    op.create_index(op.f('ix_scan_jobs_status'), 'scan_jobs', ['status'], unique=False)
    op.create_index(op.f('ix_scan_jobs_worker_id'), 'scan_jobs', ['worker_id'], unique=False)
    op.create_index('idx_scan_jobs_queue', 'scan_jobs', ['status', 'priority', 'created_at'], unique=False)

    # Create violations table
    op.create_table(
        'violations',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('scan_id', sa.String(), nullable=False),
        sa.Column('wcag_criterion', sa.String(16), nullable=False),
        sa.Column('severity', violation_severity, nullable=False),
        sa.Column('element_type', sa.String(64), nullable=True),
        sa.Column('element_selector', sa.String(512), nullable=True),
        sa.Column('element_snippet', sa.Text(), nullable=True),
        sa.Column('page_url', sa.String(2048), nullable=False),
        sa.Column('user_impact', sa.Text(), nullable=False),
        sa.Column('business_impact', sa.Text(), nullable=True),
        sa.Column('legal_risk', legal_risk, nullable=False),
        sa.Column('fix_description', sa.Text(), nullable=False),
        sa.Column('fix_snippet', sa.Text(), nullable=True),
        sa.Column('fix_effort', sa.String(16), nullable=True),
        sa.Column('estimated_fix_effort', sa.String(32), nullable=True),
        sa.Column('quick_win', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['scan_id'], ['scans.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_violations_id'), 'violations', ['id'], unique=False)
    op.create_index(op.f('ix_violations_scan_id'), 'violations', ['scan_id'], unique=False)
    op.create_index(op.f('ix_violations_wcag_criterion'), 'violations', ['wcag_criterion'], unique=False)
    op.create_index(op.f('ix_violations_severity'), 'violations', ['severity'], unique=False)
    op.create_index('idx_violations_scan_severity', 'violations', ['scan_id', 'severity'], unique=False)

    # Create worker_heartbeats table
    op.create_table(
        'worker_heartbeats',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('worker_id', sa.String(255), nullable=False),
        sa.Column('last_heartbeat', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='active'),
        sa.Column('jobs_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_job_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_worker_heartbeats_id'), 'worker_heartbeats', ['id'], unique=False)
    op.create_index(op.f('ix_worker_heartbeats_worker_id'), 'worker_heartbeats', ['worker_id'], unique=True)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('worker_heartbeats')
    op.drop_table('violations')
    op.drop_table('scan_jobs')
    op.drop_table('scans')
    bind = op.get_bind()
    for enum_type in (legal_risk, violation_severity, scan_job_status, scan_status):
        enum_type.drop(bind, checkfirst=True)

"""Self-improvement loop tables

Revision ID: 001_self_improvement
Revises:
Create Date: 2026-10-19

Creates all tables for:
- Pipeline output read by the loop (pipeline_runs, qa_feedback)
- Self-improvement queue (self_improvement_batches, self_improvement_batch_runs)
- Learning (learning_proposals, learning_proposal_diffs, learning_applied_changes,
            learning_rollback_events)
- Evaluation harness (benchmark_snapshots, harness_runs)
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_self_improvement'
down_revision = None
branch_labels = None
depends_on = None


ENUMS = {
    'self_improvement_loop_type': ('full', 'canary'),
    'self_improvement_batch_status': (
        'queued', 'running', 'completed', 'completed_with_failures', 'failed', 'cancelled',
    ),
    'self_improvement_auto_apply_policy': ('if_gate_passes', 'manual'),
    'self_improvement_run_status': (
        'queued', 'running', 'succeeded', 'retried_succeeded', 'failed', 'retried_failed',
    ),
    'learning_proposal_kind': (
        'rule_term_add', 'rule_term_remove', 'threshold_tune',
        'taxonomy_merge', 'taxonomy_split', 'taxonomy_move',
    ),
    'learning_proposal_status': ('proposed', 'applied', 'rejected', 'rolled_back'),
    'learning_applied_change_status': ('applied', 'rolled_back'),
    'qa_feedback_status': ('pass', 'fail'),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    # ==========================================================================
    # Create Enums
    # ==========================================================================

    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name, create_type=False).create(op.get_bind(), checkfirst=True)

    # ==========================================================================
    # Pipeline Output
    # ==========================================================================

    op.create_table(
        'pipeline_runs',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('store_id', sa.String(length=100), nullable=False),
        sa.Column('input_file_name', sa.String(length=500), nullable=True),
        sa.Column('run_label', sa.String(length=500), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='running'),
        sa.Column('stats', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_pipeline_runs_store_id', 'pipeline_runs', ['store_id'], unique=False)
    op.create_index('ix_pipeline_runs_started_at', 'pipeline_runs', ['started_at'], unique=False)

    op.create_table(
        'qa_feedback',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('store_id', sa.String(length=100), nullable=False),
        sa.Column('run_id', sa.String(length=64), nullable=True),
        sa.Column('sku', sa.String(length=255), nullable=False),
        sa.Column('product_title', sa.String(length=1000), nullable=True),
        sa.Column('predicted_category_slug', sa.String(length=255), nullable=True),
        sa.Column('corrected_category_slug', sa.String(length=255), nullable=True),
        sa.Column('qa_status', _enum('qa_feedback_status'), nullable=False),
        sa.Column('review_notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_qa_feedback_store_id', 'qa_feedback', ['store_id'], unique=False)

    # ==========================================================================
    # Self-Improvement Queue
    # ==========================================================================

    op.create_table(
        'self_improvement_batches',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('requested_count', sa.Integer(), nullable=False),
        sa.Column('loop_type', _enum('self_improvement_loop_type'), nullable=False),
        sa.Column('status', _enum('self_improvement_batch_status'), nullable=False, server_default='queued'),
        sa.Column('max_loops_cap', sa.Integer(), nullable=False),
        sa.Column('retry_limit', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('auto_apply_policy', _enum('self_improvement_auto_apply_policy'), nullable=False, server_default='if_gate_passes'),
        sa.Column('summary', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_self_improvement_batches_status', 'self_improvement_batches', ['status'], unique=False)
    op.create_index('ix_self_improvement_batches_created_at', 'self_improvement_batches', ['created_at'], unique=False)

    op.create_table(
        'self_improvement_batch_runs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('batch_id', sa.UUID(), nullable=False),
        sa.Column('sequence_no', sa.Integer(), nullable=False),
        sa.Column('attempt_no', sa.Integer(), nullable=False),
        sa.Column('status', _enum('self_improvement_run_status'), nullable=False, server_default='queued'),
        sa.Column('pipeline_run_id', sa.String(length=64), nullable=True),
        sa.Column('error', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('self_correction_context', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('gate_result', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('learning_result', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['batch_id'], ['self_improvement_batches.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('batch_id', 'sequence_no', 'attempt_no', name='uq_self_improvement_run_attempt'),
    )
    op.create_index('ix_self_improvement_batch_runs_batch_id', 'self_improvement_batch_runs', ['batch_id'], unique=False)
    op.create_index('ix_self_improvement_batch_runs_status', 'self_improvement_batch_runs', ['status'], unique=False)

    # ==========================================================================
    # Learning
    # ==========================================================================

    op.create_table(
        'learning_proposals',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('batch_id', sa.UUID(), nullable=True),
        sa.Column('run_id', sa.String(length=64), nullable=True),
        sa.Column('kind', _enum('learning_proposal_kind'), nullable=False),
        sa.Column('status', _enum('learning_proposal_status'), nullable=False, server_default='proposed'),
        sa.Column('confidence_score', sa.Float(), nullable=False),
        sa.Column('expected_impact_score', sa.Float(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('source', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('applied_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['batch_id'], ['self_improvement_batches.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_learning_proposals_batch_id', 'learning_proposals', ['batch_id'], unique=False)
    op.create_index('ix_learning_proposals_run_id', 'learning_proposals', ['run_id'], unique=False)
    op.create_index('ix_learning_proposals_status', 'learning_proposals', ['status'], unique=False)

    op.create_table(
        'learning_proposal_diffs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('proposal_id', sa.UUID(), nullable=False),
        sa.Column('before_snapshot', sa.JSON(), nullable=False),
        sa.Column('after_snapshot', sa.JSON(), nullable=False),
        sa.Column('diff_text', sa.Text(), nullable=False),
        sa.Column('before_content', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['proposal_id'], ['learning_proposals.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_learning_proposal_diffs_proposal_id', 'learning_proposal_diffs', ['proposal_id'], unique=False)

    op.create_table(
        'learning_applied_changes',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('proposal_id', sa.UUID(), nullable=False),
        sa.Column('kind', _enum('learning_proposal_kind'), nullable=False),
        sa.Column('status', _enum('learning_applied_change_status'), nullable=False, server_default='applied'),
        sa.Column('version_before', sa.String(length=255), nullable=False),
        sa.Column('version_after', sa.String(length=255), nullable=False),
        sa.Column('rollback_token', sa.String(length=64), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('applied_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('rolled_back_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['proposal_id'], ['learning_proposals.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('rollback_token'),
    )
    op.create_index('ix_learning_applied_changes_proposal_id', 'learning_applied_changes', ['proposal_id'], unique=False)
    op.create_index('ix_learning_applied_changes_status', 'learning_applied_changes', ['status'], unique=False)
    op.create_index('ix_learning_applied_changes_applied_at', 'learning_applied_changes', ['applied_at'], unique=False)

    op.create_table(
        'learning_rollback_events',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('applied_change_id', sa.UUID(), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['applied_change_id'], ['learning_applied_changes.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_learning_rollback_events_applied_change_id', 'learning_rollback_events', ['applied_change_id'], unique=False)

    # ==========================================================================
    # Evaluation Harness
    # ==========================================================================

    op.create_table(
        'benchmark_snapshots',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('store_id', sa.String(length=100), nullable=False),
        sa.Column('source', sa.String(length=255), nullable=False),
        sa.Column('row_count', sa.Integer(), nullable=False),
        sa.Column('sample_size', sa.Integer(), nullable=False),
        sa.Column('dataset_hash', sa.String(length=64), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_benchmark_snapshots_store_id', 'benchmark_snapshots', ['store_id'], unique=False)
    op.create_index('ix_benchmark_snapshots_created_at', 'benchmark_snapshots', ['created_at'], unique=False)

    op.create_table(
        'harness_runs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('candidate_run_id', sa.String(length=64), nullable=False),
        sa.Column('baseline_run_id', sa.String(length=64), nullable=True),
        sa.Column('benchmark_snapshot_id', sa.UUID(), nullable=True),
        sa.Column('passed', sa.Boolean(), nullable=False),
        sa.Column('metric_scores', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('failed_metrics', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['benchmark_snapshot_id'], ['benchmark_snapshots.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_harness_runs_candidate_run_id', 'harness_runs', ['candidate_run_id'], unique=False)


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_table('harness_runs')
    op.drop_table('benchmark_snapshots')
    op.drop_table('learning_rollback_events')
    op.drop_table('learning_applied_changes')
    op.drop_table('learning_proposal_diffs')
    op.drop_table('learning_proposals')
    op.drop_table('self_improvement_batch_runs')
    op.drop_table('self_improvement_batches')
    op.drop_table('qa_feedback')
    op.drop_table('pipeline_runs')

    # Drop enums
    for name in reversed(list(ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name}")

"""
Catalog Autotune - Database Models
==================================

SQLAlchemy models for the self-improvement control loop.

The pipeline_runs and qa_feedback tables are written by the categorization
pipeline and the QA import; the loop only reads them.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from catalog_autotune.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _values_enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    """Store enum values (not member names) so the columns match the migrations."""
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


# ==========================================================================
# Enums
# ==========================================================================

class LoopType(str, enum.Enum):
    """Which input a self-improvement loop runs the pipeline on."""
    FULL = "full"
    CANARY = "canary"


class BatchStatus(str, enum.Enum):
    """Lifecycle of a self-improvement batch."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_FAILURES = "completed_with_failures"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunAttemptStatus(str, enum.Enum):
    """Status of one attempt of one batch sequence."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    RETRIED_SUCCEEDED = "retried_succeeded"
    FAILED = "failed"
    RETRIED_FAILED = "retried_failed"


class AutoApplyPolicy(str, enum.Enum):
    """When generated proposals may be applied without a human."""
    IF_GATE_PASSES = "if_gate_passes"
    MANUAL = "manual"


class ProposalKind(str, enum.Enum):
    """Kind of rule edit a proposal carries."""
    RULE_TERM_ADD = "rule_term_add"
    RULE_TERM_REMOVE = "rule_term_remove"
    THRESHOLD_TUNE = "threshold_tune"
    TAXONOMY_MERGE = "taxonomy_merge"
    TAXONOMY_SPLIT = "taxonomy_split"
    TAXONOMY_MOVE = "taxonomy_move"


class ProposalStatus(str, enum.Enum):
    PROPOSED = "proposed"
    APPLIED = "applied"
    REJECTED = "rejected"
    ROLLED_BACK = "rolled_back"


class AppliedChangeStatus(str, enum.Enum):
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"


class QaStatus(str, enum.Enum):
    PASS = "pass"
    FAIL = "fail"


PROPOSAL_KIND_ENUM = _values_enum(ProposalKind, "learning_proposal_kind")

STRUCTURAL_PROPOSAL_KINDS = frozenset({
    ProposalKind.TAXONOMY_MERGE,
    ProposalKind.TAXONOMY_SPLIT,
    ProposalKind.TAXONOMY_MOVE,
})

ACTIVE_BATCH_STATUSES = (BatchStatus.QUEUED, BatchStatus.RUNNING)

FINAL_RUN_STATUSES = frozenset({
    RunAttemptStatus.SUCCEEDED,
    RunAttemptStatus.RETRIED_SUCCEEDED,
    RunAttemptStatus.FAILED,
    RunAttemptStatus.RETRIED_FAILED,
})


# ==========================================================================
# Self-Improvement Queue
# ==========================================================================

class SelfImprovementBatch(Base):
    """
    A requested set of N sequential self-improvement loops.

    Claimed by exactly one worker at a time; the summary column holds the
    aggregated counters the orchestrator maintains while it runs.
    """

    __tablename__ = "self_improvement_batches"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    requested_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    loop_type: Mapped[LoopType] = mapped_column(
        _values_enum(LoopType, "self_improvement_loop_type"),
        nullable=False,
    )
    status: Mapped[BatchStatus] = mapped_column(
        _values_enum(BatchStatus, "self_improvement_batch_status"),
        default=BatchStatus.QUEUED,
        nullable=False,
        index=True,
    )
    max_loops_cap: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    retry_limit: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )
    auto_apply_policy: Mapped[AutoApplyPolicy] = mapped_column(
        _values_enum(AutoApplyPolicy, "self_improvement_auto_apply_policy"),
        default=AutoApplyPolicy.IF_GATE_PASSES,
        nullable=False,
    )
    summary: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<SelfImprovementBatch {self.id} {self.loop_type.value} {self.status.value}>"


class SelfImprovementRun(Base):
    """One attempt of one sequence inside a batch."""

    __tablename__ = "self_improvement_batch_runs"
    __table_args__ = (
        UniqueConstraint("batch_id", "sequence_no", "attempt_no", name="uq_self_improvement_run_attempt"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    batch_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("self_improvement_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence_no: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    attempt_no: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    status: Mapped[RunAttemptStatus] = mapped_column(
        _values_enum(RunAttemptStatus, "self_improvement_run_status"),
        default=RunAttemptStatus.QUEUED,
        nullable=False,
        index=True,
    )
    pipeline_run_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    error: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    self_correction_context: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    gate_result: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    learning_result: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<SelfImprovementRun seq={self.sequence_no} attempt={self.attempt_no} {self.status.value}>"


# ==========================================================================
# Learning Proposals & Applied Changes
# ==========================================================================

class LearningProposal(Base):
    """A candidate edit to the category rules file."""

    __tablename__ = "learning_proposals"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("self_improvement_batches.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    run_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )
    kind: Mapped[ProposalKind] = mapped_column(
        PROPOSAL_KIND_ENUM,
        nullable=False,
    )
    status: Mapped[ProposalStatus] = mapped_column(
        _values_enum(ProposalStatus, "learning_proposal_status"),
        default=ProposalStatus.PROPOSED,
        nullable=False,
        index=True,
    )
    confidence_score: Mapped[float] = mapped_column(
        Float,
        nullable=False,
    )
    expected_impact_score: Mapped[float] = mapped_column(
        Float,
        nullable=False,
    )
    payload: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )  # {target_slug, field, action, value, reason}
    source: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    applied_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    @property
    def is_structural(self) -> bool:
        return self.kind in STRUCTURAL_PROPOSAL_KINDS

    def __repr__(self) -> str:
        return f"<LearningProposal {self.kind.value} {self.status.value}>"


class LearningProposalDiff(Base):
    """Before/after snapshot of the rules file for one applied proposal."""

    __tablename__ = "learning_proposal_diffs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    proposal_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("learning_proposals.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    before_snapshot: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )
    after_snapshot: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )
    diff_text: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    before_content: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )  # exact rules file text before the apply
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )


class AppliedChange(Base):
    """A committed proposal together with what is needed to undo it."""

    __tablename__ = "learning_applied_changes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    proposal_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("learning_proposals.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind: Mapped[ProposalKind] = mapped_column(
        PROPOSAL_KIND_ENUM,
        nullable=False,
    )
    status: Mapped[AppliedChangeStatus] = mapped_column(
        _values_enum(AppliedChangeStatus, "learning_applied_change_status"),
        default=AppliedChangeStatus.APPLIED,
        nullable=False,
        index=True,
    )
    version_before: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    version_after: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    rollback_token: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
    )
    change_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSON,
        default=dict,
        nullable=False,
    )
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
    )
    rolled_back_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    @property
    def is_synthetic(self) -> bool:
        return bool(self.change_metadata.get("synthetic_apply"))

    def __repr__(self) -> str:
        return f"<AppliedChange {self.kind.value} {self.status.value}>"


class RollbackEvent(Base):
    """Audit row written every time an applied change is reverted."""

    __tablename__ = "learning_rollback_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    applied_change_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("learning_applied_changes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    reason: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    event_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSON,
        default=dict,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )


# ==========================================================================
# Evaluation Harness
# ==========================================================================

class BenchmarkSnapshot(Base):
    """Frozen description of the evaluation sample for a store."""

    __tablename__ = "benchmark_snapshots"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    store_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    source: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    row_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    sample_size: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    dataset_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    snapshot_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSON,
        default=dict,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
    )


class HarnessRun(Base):
    """Result of comparing a candidate pipeline run against a baseline."""

    __tablename__ = "harness_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    candidate_run_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    baseline_run_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    benchmark_snapshot_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("benchmark_snapshots.id", ondelete="SET NULL"),
        nullable=True,
    )
    passed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
    )
    metric_scores: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    failed_metrics: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )


# ==========================================================================
# Pipeline Output (read-only for the loop)
# ==========================================================================

class PipelineRunRecord(Base):
    """A categorization pipeline run and the statistics it persisted."""

    __tablename__ = "pipeline_runs"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    store_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    input_file_name: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )
    run_label: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(
        String(50),
        default="running",
        nullable=False,
    )  # running, completed_pending_review, accepted, rejected, failed
    stats: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )


class QaFeedback(Base):
    """Human QA verdict on one categorized product."""

    __tablename__ = "qa_feedback"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    store_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    run_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    sku: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    product_title: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
    )
    predicted_category_slug: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    corrected_category_slug: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    qa_status: Mapped[QaStatus] = mapped_column(
        _values_enum(QaStatus, "qa_feedback_status"),
        nullable=False,
    )
    review_notes: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

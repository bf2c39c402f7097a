"""
Catalog Autotune - Pydantic Schemas
===================================

Request and response schemas for API validation.
"""

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from catalog_autotune.core.models import (
    AppliedChangeStatus,
    AutoApplyPolicy,
    BatchStatus,
    LoopType,
    ProposalKind,
    ProposalStatus,
    RunAttemptStatus,
)


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# ==========================================================================
# Self-Improvement Schemas
# ==========================================================================

class BatchCreate(BaseSchema):
    """Request to enqueue a self-improvement batch."""

    count: int = Field(gt=0, description="Number of sequential loops to run")
    loop_type: LoopType = LoopType.CANARY


class PhraseRequest(BaseSchema):
    """Operator phrase, e.g. 'run 5 self-improvement canary loops'."""

    phrase: str = Field(min_length=1, max_length=500)
    limit: int = Field(default=20, gt=0, le=200)
    include_finished: bool = True


class RollbackRequest(BaseSchema):
    reason: str = Field(default="manual_rollback", min_length=1, max_length=255)


class BatchResponse(BaseSchema):
    id: UUID
    requested_count: int
    loop_type: LoopType
    status: BatchStatus
    max_loops_cap: int
    retry_limit: int
    auto_apply_policy: AutoApplyPolicy
    summary: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class RunAttemptResponse(BaseSchema):
    id: UUID
    sequence_no: int
    attempt_no: int
    status: RunAttemptStatus
    pipeline_run_id: Optional[str] = None
    error: dict[str, Any]
    self_correction_context: dict[str, Any]
    gate_result: dict[str, Any]
    learning_result: dict[str, Any]
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class BatchStatusViewResponse(BaseSchema):
    """Operator-facing progress view of a batch."""

    batch_id: str
    loop_type: LoopType
    status: BatchStatus
    total_loops: int
    completed_loops: int
    failed_loops: int
    currently_running_loop: Optional[int] = None
    last_failure_reason: Optional[str] = None
    retry_attempted: bool
    any_updates_auto_applied: bool
    auto_applied_updates_count: int
    gate_pass_rate: float
    summary: dict[str, Any]
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class BatchDetailResponse(BaseSchema):
    batch: BatchResponse
    runs: list[RunAttemptResponse]
    view: BatchStatusViewResponse


class PhraseResponse(BaseSchema):
    mode: Literal["enqueue", "status_all", "status_one"]
    found: Optional[bool] = None
    batch: Optional[BatchDetailResponse] = None
    batches: list[BatchStatusViewResponse] = Field(default_factory=list)


class AppliedChangeResponse(BaseSchema):
    id: UUID
    proposal_id: UUID
    kind: ProposalKind
    status: AppliedChangeStatus
    version_before: str
    version_after: str
    change_metadata: dict[str, Any] = Field(serialization_alias="metadata")
    applied_at: datetime
    rolled_back_at: Optional[datetime] = None


class StaleRecoveryResponse(BaseSchema):
    recovered_runs: int
    requeued_batches: int


# ==========================================================================
# Learning & Harness Schemas
# ==========================================================================

class ProposeRequest(BaseSchema):
    """Generate proposals for a run; its confusion alerts are read from the stored stats."""

    batch_id: Optional[UUID] = None
    run_id: Optional[str] = None
    failed_metrics: list[str] = Field(default_factory=list)
    max_proposals: Optional[int] = Field(default=None, gt=0)


class ProposalResponse(BaseSchema):
    id: UUID
    batch_id: Optional[UUID] = None
    run_id: Optional[str] = None
    kind: ProposalKind
    status: ProposalStatus
    confidence_score: float
    expected_impact_score: float
    payload: dict[str, Any]
    created_at: datetime


class ProposeResponse(BaseSchema):
    batch_id: Optional[UUID] = None
    run_id: Optional[str] = None
    failed_metrics: list[str]
    proposals_generated: int
    proposals: list[ProposalResponse]


class HarnessEvaluateRequest(BaseSchema):
    candidate_run_id: Optional[str] = None
    baseline_run_id: Optional[str] = None
    benchmark_snapshot_id: Optional[UUID] = None
    store_id: Optional[str] = None


class LearnApplyRequest(BaseSchema):
    """
    Evaluate the harness for a candidate run, then apply pending proposals.

    candidate_run_id defaults to run_id.
    """

    batch_id: Optional[UUID] = None
    run_id: Optional[str] = None
    candidate_run_id: Optional[str] = None
    baseline_run_id: Optional[str] = None
    benchmark_snapshot_id: Optional[UUID] = None


class BenchmarkSnapshotRequest(BaseSchema):
    store_id: Optional[str] = None


class BenchmarkSnapshotResponse(BaseSchema):
    id: UUID
    store_id: str
    source: str
    row_count: int
    sample_size: int
    dataset_hash: str
    snapshot_metadata: dict[str, Any] = Field(serialization_alias="metadata")
    created_at: datetime


class HarnessResultResponse(BaseSchema):
    passed: bool
    candidate_run_id: str
    baseline_run_id: Optional[str] = None
    benchmark_snapshot_id: Optional[UUID] = None
    metric_scores: dict[str, float]
    failed_metrics: list[str]
    harness_delta: float


class LearnApplyResponse(BaseSchema):
    harness: HarnessResultResponse
    considered: int
    applied: int
    structural_applied: int
    applied_changes: list[AppliedChangeResponse]


# ==========================================================================
# System Schemas
# ==========================================================================

class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str

"""
Status View Tests
=================

Views are derived from in-memory batches and attempts; nothing is persisted.
"""

import uuid
from typing import Any, Optional

from catalog_autotune.core.models import (
    AutoApplyPolicy,
    BatchStatus,
    LoopType,
    RunAttemptStatus,
    SelfImprovementBatch,
    SelfImprovementRun,
    utcnow,
)
from catalog_autotune.core.self_improvement.status import (
    derive_batch_status_view,
    derive_fallback_status_view,
)


def make_batch(requested_count: int = 3, summary: Optional[dict[str, Any]] = None) -> SelfImprovementBatch:
    return SelfImprovementBatch(
        id=uuid.uuid4(),
        requested_count=requested_count,
        loop_type=LoopType.CANARY,
        status=BatchStatus.RUNNING,
        max_loops_cap=10,
        retry_limit=1,
        auto_apply_policy=AutoApplyPolicy.IF_GATE_PASSES,
        summary=summary or {},
        created_at=utcnow(),
    )


def make_run(
    batch: SelfImprovementBatch,
    sequence_no: int,
    attempt_no: int,
    status: RunAttemptStatus,
    error: Optional[dict[str, Any]] = None,
    context: Optional[dict[str, Any]] = None,
    learning: Optional[dict[str, Any]] = None,
) -> SelfImprovementRun:
    return SelfImprovementRun(
        id=uuid.uuid4(),
        batch_id=batch.id,
        sequence_no=sequence_no,
        attempt_no=attempt_no,
        status=status,
        error=error or {},
        self_correction_context=context or {},
        gate_result={},
        learning_result=learning or {},
    )


class TestDeriveBatchStatusView:
    def test_counts_use_latest_attempt_per_sequence(self):
        batch = make_batch(summary={"gate_pass_rate": 0.5})
        runs = [
            make_run(batch, 1, 1, RunAttemptStatus.SUCCEEDED, learning={"auto_applied_updates": 2}),
            make_run(batch, 2, 1, RunAttemptStatus.FAILED, error={"message": "pipeline crashed"}),
            make_run(batch, 2, 2, RunAttemptStatus.RETRIED_SUCCEEDED, learning={"auto_applied_updates": 1}),
            make_run(batch, 3, 1, RunAttemptStatus.RUNNING),
        ]

        view = derive_batch_status_view(batch, runs)

        assert view.total_loops == 3
        assert view.completed_loops == 2
        assert view.failed_loops == 0
        assert view.currently_running_loop == 3
        assert view.last_failure_reason == "pipeline crashed"
        assert view.retry_attempted is False
        assert view.auto_applied_updates_count == 3
        assert view.any_updates_auto_applied is True
        assert view.gate_pass_rate == 0.5

    def test_last_failure_prefers_latest_sequence_and_attempt(self):
        batch = make_batch(requested_count=2)
        runs = [
            make_run(batch, 1, 1, RunAttemptStatus.FAILED, error={"message": "first"}),
            make_run(batch, 2, 1, RunAttemptStatus.FAILED, error={"message": "second"}),
            make_run(
                batch, 2, 2, RunAttemptStatus.RETRIED_FAILED,
                context={"failure_summary": "quality_gate_failed"},
            ),
        ]

        view = derive_batch_status_view(batch, runs)

        assert view.failed_loops == 2
        assert view.completed_loops == 2
        assert view.last_failure_reason == "quality_gate_failed"
        assert view.retry_attempted is True
        assert view.currently_running_loop is None

    def test_empty_batch(self):
        view = derive_batch_status_view(make_batch(), [])

        assert view.completed_loops == 0
        assert view.last_failure_reason is None
        assert view.any_updates_auto_applied is False
        assert view.gate_pass_rate == 0.0


class TestDeriveFallbackStatusView:
    def test_reads_counters_from_summary(self):
        batch = make_batch(summary={
            "completed_loops": 2,
            "final_failed_count": 1,
            "running_sequence": 3,
            "auto_applied_updates_count": 0,
            "gate_pass_rate": 0.5,
        })

        view = derive_fallback_status_view(batch)

        assert view.batch_id == str(batch.id)
        assert view.completed_loops == 2
        assert view.failed_loops == 1
        assert view.currently_running_loop == 3
        assert view.any_updates_auto_applied is False
        assert view.last_failure_reason is None
        assert view.retry_attempted is False

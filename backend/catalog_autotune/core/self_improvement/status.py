"""
Status Views - Operator-facing summaries of self-improvement batches.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from catalog_autotune.core.models import (
    BatchStatus,
    LoopType,
    RunAttemptStatus,
    SelfImprovementBatch,
    SelfImprovementRun,
)
from catalog_autotune.core.self_improvement.quality_gate import as_number

FAILED_ATTEMPT_STATUSES = (RunAttemptStatus.FAILED, RunAttemptStatus.RETRIED_FAILED)
OPEN_ATTEMPT_STATUSES = (RunAttemptStatus.QUEUED, RunAttemptStatus.RUNNING)


@dataclass
class BatchStatusView:
    batch_id: str
    loop_type: LoopType
    status: BatchStatus
    total_loops: int
    completed_loops: int
    failed_loops: int
    currently_running_loop: Optional[int]
    last_failure_reason: Optional[str]
    retry_attempted: bool
    any_updates_auto_applied: bool
    auto_applied_updates_count: int
    gate_pass_rate: float
    summary: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


def _count(value: Any) -> int:
    return int(as_number(value) or 0)


def _failure_reason(run: Optional[SelfImprovementRun]) -> Optional[str]:
    if run is None:
        return None
    message = (run.error or {}).get("message")
    if isinstance(message, str):
        return message
    summary = (run.self_correction_context or {}).get("failure_summary")
    return summary if isinstance(summary, str) else None


def derive_fallback_status_view(batch: SelfImprovementBatch) -> BatchStatusView:
    """Build the view from the batch summary alone."""
    summary = dict(batch.summary or {})
    auto_applied = _count(summary.get("auto_applied_updates_count"))
    return BatchStatusView(
        batch_id=str(batch.id),
        loop_type=batch.loop_type,
        status=batch.status,
        total_loops=batch.requested_count,
        completed_loops=_count(summary.get("completed_loops")),
        failed_loops=_count(summary.get("final_failed_count")),
        currently_running_loop=summary.get("running_sequence"),
        last_failure_reason=None,
        retry_attempted=False,
        any_updates_auto_applied=auto_applied > 0,
        auto_applied_updates_count=auto_applied,
        gate_pass_rate=as_number(summary.get("gate_pass_rate")) or 0.0,
        summary=summary,
        created_at=batch.created_at,
        started_at=batch.started_at,
        finished_at=batch.finished_at,
    )


def derive_batch_status_view(
    batch: SelfImprovementBatch,
    runs: Iterable[SelfImprovementRun],
) -> BatchStatusView:
    """Build the view from persisted attempts, using the latest attempt per sequence."""
    runs = list(runs)
    latest: dict[int, SelfImprovementRun] = {}
    for run in runs:
        previous = latest.get(run.sequence_no)
        if previous is None or run.attempt_no > previous.attempt_no:
            latest[run.sequence_no] = run

    latest_runs = sorted(latest.values(), key=lambda run: run.sequence_no)
    completed_loops = sum(1 for run in latest_runs if run.status not in OPEN_ATTEMPT_STATUSES)
    failed_loops = sum(1 for run in latest_runs if run.status in FAILED_ATTEMPT_STATUSES)
    currently_running = next(
        (run.sequence_no for run in latest_runs if run.status == RunAttemptStatus.RUNNING),
        None,
    )

    failed_attempts = sorted(
        (run for run in runs if run.status in FAILED_ATTEMPT_STATUSES),
        key=lambda run: (run.sequence_no, run.attempt_no),
        reverse=True,
    )
    last_failed = failed_attempts[0] if failed_attempts else None
    auto_applied = sum(_count((run.learning_result or {}).get("auto_applied_updates")) for run in runs)
    summary = dict(batch.summary or {})

    return BatchStatusView(
        batch_id=str(batch.id),
        loop_type=batch.loop_type,
        status=batch.status,
        total_loops=batch.requested_count,
        completed_loops=completed_loops,
        failed_loops=failed_loops,
        currently_running_loop=currently_running,
        last_failure_reason=_failure_reason(last_failed),
        retry_attempted=bool(last_failed and last_failed.attempt_no > 1),
        any_updates_auto_applied=auto_applied > 0,
        auto_applied_updates_count=auto_applied,
        gate_pass_rate=as_number(summary.get("gate_pass_rate")) or 0.0,
        summary=summary,
        created_at=batch.created_at,
        started_at=batch.started_at,
        finished_at=batch.finished_at,
    )

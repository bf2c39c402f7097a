"""
Self-Improvement Orchestrator - Drives one claimed batch to a terminal status.

Sequences are processed strictly one after another. Before each sequence the
persisted attempts are turned into a resume plan, so a batch requeued after
a worker crash continues where it stopped instead of starting over.
"""

import enum
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_autotune.core.config import Settings, get_settings
from catalog_autotune.core.models import (
    FINAL_RUN_STATUSES,
    BatchStatus,
    RunAttemptStatus,
    SelfImprovementBatch,
    SelfImprovementRun,
)
from catalog_autotune.core.self_improvement.collaborators import CanarySubsetBuilder, PipelineRunner
from catalog_autotune.core.self_improvement.learning import RulesRestoreError
from catalog_autotune.core.self_improvement.loop import LoopAttemptError, LoopAttemptExecutor
from catalog_autotune.core.self_improvement.quality_gate import (
    as_number,
    build_self_correction_context,
    unique,
)
from catalog_autotune.core.self_improvement.rule_patch import RulesRepository
from catalog_autotune.core.self_improvement.store import SelfImprovementStore, initial_summary

logger = structlog.get_logger(__name__)

LEARNING_COUNTERS = {
    "proposals_generated": 0,
    "proposals_applied": 0,
    "structural_applies": 0,
    "rollbacks_triggered": 0,
    "avg_harness_delta": 0,
    "harness_delta_samples": 0,
    "harness_delta_total": 0,
}


class SequenceResult(str, enum.Enum):
    SUCCEEDED = "succeeded"
    RETRIED_SUCCEEDED = "retried_succeeded"
    FINAL_FAILED = "final_failed"


STATUS_TO_RESULT = {
    RunAttemptStatus.SUCCEEDED: SequenceResult.SUCCEEDED,
    RunAttemptStatus.RETRIED_SUCCEEDED: SequenceResult.RETRIED_SUCCEEDED,
    RunAttemptStatus.FAILED: SequenceResult.FINAL_FAILED,
    RunAttemptStatus.RETRIED_FAILED: SequenceResult.FINAL_FAILED,
}


# ==========================================================================
# Pure Policy
# ==========================================================================

def decide_attempt_status(
    passed: bool,
    retryable: bool,
    attempt_no: int,
    retry_limit: int,
) -> tuple[RunAttemptStatus, bool]:
    """
    Map an attempt outcome to its terminal status.

    Returns (status, retry) where retry tells the caller to run attempt_no + 1.
    """
    if passed:
        return (RunAttemptStatus.SUCCEEDED if attempt_no == 1 else RunAttemptStatus.RETRIED_SUCCEEDED), False
    if retryable and attempt_no <= retry_limit:
        return RunAttemptStatus.FAILED, True
    if attempt_no == 1:
        return RunAttemptStatus.FAILED, False
    return RunAttemptStatus.RETRIED_FAILED, False


def _error_message(attempt: SelfImprovementRun) -> str:
    message = (attempt.error or {}).get("message")
    return message.strip() if isinstance(message, str) else ""


def _failed_metrics_of(attempts: Iterable[SelfImprovementRun]) -> list[str]:
    metrics: list[str] = []
    for attempt in attempts:
        if attempt.status not in FINAL_RUN_STATUSES:
            continue
        metrics.extend((attempt.gate_result or {}).get("failed_metrics") or [])
        metrics.extend((attempt.self_correction_context or {}).get("failed_gate_metrics") or [])
    return unique([str(metric) for metric in metrics])


@dataclass
class ResumePlan:
    """Where a sequence stands according to its persisted attempts."""

    complete: bool
    next_attempt_no: Optional[int] = None
    result: Optional[SequenceResult] = None
    carried_failed_metrics: list[str] = field(default_factory=list)
    finished_attempts: list[SelfImprovementRun] = field(default_factory=list)


def build_resume_plan(attempts: Iterable[SelfImprovementRun], retry_limit: int) -> ResumePlan:
    ordered = sorted(attempts, key=lambda attempt: attempt.attempt_no)
    if not ordered:
        return ResumePlan(complete=False, next_attempt_no=1)

    latest = ordered[-1]
    finished = [attempt for attempt in ordered if attempt.status in FINAL_RUN_STATUSES]
    carried = _failed_metrics_of(finished)

    if latest.status in (RunAttemptStatus.QUEUED, RunAttemptStatus.RUNNING):
        # Interrupted before finalize: rerun the same attempt number
        return ResumePlan(
            complete=False,
            next_attempt_no=latest.attempt_no,
            carried_failed_metrics=carried,
            finished_attempts=[attempt for attempt in finished if attempt.attempt_no < latest.attempt_no],
        )

    if latest.status == RunAttemptStatus.FAILED:
        pure_gate_failure = not _error_message(latest)
        if not pure_gate_failure and latest.attempt_no <= retry_limit:
            return ResumePlan(
                complete=False,
                next_attempt_no=latest.attempt_no + 1,
                carried_failed_metrics=carried,
                finished_attempts=finished,
            )

    return ResumePlan(
        complete=True,
        result=STATUS_TO_RESULT[latest.status],
        carried_failed_metrics=carried,
        finished_attempts=finished,
    )


# ==========================================================================
# Summary
# ==========================================================================

@dataclass
class SequenceOutcome:
    result: Optional[SequenceResult] = None
    proposals_generated: int = 0
    proposals_applied: int = 0
    structural_applies: int = 0
    auto_applied_updates: int = 0
    rollbacks_triggered: int = 0
    harness_deltas: list[float] = field(default_factory=list)

    def add_learning_result(self, learning_result: dict[str, Any]) -> None:
        if not learning_result:
            return
        self.proposals_generated += int(as_number(learning_result.get("proposals_generated")) or 0)
        self.proposals_applied += int(as_number(learning_result.get("proposals_applied")) or 0)
        self.structural_applies += int(as_number(learning_result.get("structural_applies")) or 0)
        self.auto_applied_updates += int(as_number(learning_result.get("auto_applied_updates")) or 0)
        if learning_result.get("rollback_triggered"):
            self.rollbacks_triggered += 1
        delta = as_number(learning_result.get("harness_delta"))
        if delta is not None:
            self.harness_deltas.append(delta)

    @classmethod
    def from_attempts(cls, result: SequenceResult, attempts: Iterable[SelfImprovementRun]) -> "SequenceOutcome":
        outcome = cls(result=result)
        for attempt in attempts:
            outcome.add_learning_result(attempt.learning_result or {})
        return outcome


def merge_sequence_outcome(summary: dict[str, Any], outcome: SequenceOutcome) -> dict[str, Any]:
    merged = dict(summary)

    def bump(key: str, amount: float) -> None:
        merged[key] = (as_number(merged.get(key)) or 0) + amount

    bump("completed_loops", 1)
    if outcome.result == SequenceResult.SUCCEEDED:
        bump("success_count", 1)
    elif outcome.result == SequenceResult.RETRIED_SUCCEEDED:
        bump("retried_success_count", 1)
    else:
        bump("final_failed_count", 1)

    bump("proposals_generated", outcome.proposals_generated)
    bump("proposals_applied", outcome.proposals_applied)
    bump("structural_applies", outcome.structural_applies)
    bump("auto_applied_updates_count", outcome.auto_applied_updates)
    bump("rollbacks_triggered", outcome.rollbacks_triggered)
    bump("harness_delta_total", sum(outcome.harness_deltas))
    bump("harness_delta_samples", len(outcome.harness_deltas))

    completed = merged["completed_loops"]
    merged["failed_loops"] = merged.get("final_failed_count", 0)
    merged["gate_pass_rate"] = (
        (merged.get("success_count", 0) + merged.get("retried_success_count", 0)) / completed
        if completed else 0
    )
    samples = merged["harness_delta_samples"]
    merged["avg_harness_delta"] = merged["harness_delta_total"] / samples if samples else 0
    for key in ("completed_loops", "success_count", "retried_success_count", "final_failed_count",
                "failed_loops", "proposals_generated", "proposals_applied", "structural_applies",
                "auto_applied_updates_count", "rollbacks_triggered", "harness_delta_samples"):
        if key in merged:
            merged[key] = int(merged[key])
    return merged


def rebuild_summary(batch: SelfImprovementBatch, runs: Iterable[SelfImprovementRun]) -> dict[str, Any]:
    """Recompute the counters from persisted attempts of already complete sequences."""
    summary = {
        **(batch.summary or {}),
        **initial_summary(batch.requested_count),
        **LEARNING_COUNTERS,
        "running_sequence": None,
    }
    summary.pop("worker_failure", None)

    by_sequence: dict[int, list[SelfImprovementRun]] = defaultdict(list)
    for run in runs:
        by_sequence[run.sequence_no].append(run)

    for sequence_no in range(1, batch.requested_count + 1):
        plan = build_resume_plan(by_sequence.get(sequence_no, []), batch.retry_limit)
        if plan.complete:
            summary = merge_sequence_outcome(
                summary,
                SequenceOutcome.from_attempts(plan.result, plan.finished_attempts),
            )
    return summary


# ==========================================================================
# Orchestrator
# ==========================================================================

class SelfImprovementOrchestrator:
    """
    Claims queued batches and runs their sequences.

    Features:
    - Crash-safe resume from persisted attempts
    - Per-sequence retry budget (retry_limit + 1 attempts at most)
    - Cooperative cancellation checked before every sequence
    - Batches always end in a terminal status
    """

    def __init__(
        self,
        db: AsyncSession,
        pipeline_runner: PipelineRunner,
        rules: RulesRepository,
        canary_builder: Optional[CanarySubsetBuilder] = None,
        settings: Optional[Settings] = None,
        executor: Optional[LoopAttemptExecutor] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.store = SelfImprovementStore(db)
        self.executor = executor or LoopAttemptExecutor(
            self.store,
            pipeline_runner,
            rules,
            canary_builder=canary_builder,
            settings=self.settings,
        )

    async def process_next_batch(self) -> Optional[SelfImprovementBatch]:
        """Claim one queued batch and drive it to completion. None if the queue is empty."""
        batch = await self.store.claim_next_queued_batch()
        if batch is None:
            return None
        return await self.process_batch(batch)

    async def process_batch(self, batch: SelfImprovementBatch) -> SelfImprovementBatch:
        batch_id = batch.id
        log = logger.bind(batch_id=str(batch_id), loop_type=batch.loop_type.value)
        summary: dict[str, Any] = dict(batch.summary or {})
        requested_count = batch.requested_count
        retry_limit = batch.retry_limit

        try:
            summary = rebuild_summary(batch, await self.store.list_batch_runs(batch_id))
            await self.store.update_batch_summary(batch_id, summary)
            log.info("self_improvement_batch_started", requested_count=requested_count)

            for sequence_no in range(1, requested_count + 1):
                if await self.store.get_batch_status(batch_id) == BatchStatus.CANCELLED:
                    log.info("self_improvement_batch_cancel_observed", sequence_no=sequence_no)
                    return await self.store.finalize_batch(
                        batch_id,
                        BatchStatus.CANCELLED,
                        {**summary, "running_sequence": None},
                    )

                attempts = [
                    run for run in await self.store.list_batch_runs(batch_id)
                    if run.sequence_no == sequence_no
                ]
                plan = build_resume_plan(attempts, retry_limit)
                if plan.complete:
                    log.info("self_improvement_sequence_skipped", sequence_no=sequence_no, result=plan.result.value)
                    continue

                summary = {**summary, "running_sequence": sequence_no}
                batch = await self.store.update_batch_summary(batch_id, summary)

                outcome = await self._process_sequence(batch, sequence_no, plan)
                summary = {**merge_sequence_outcome(summary, outcome), "running_sequence": None}
                await self.store.update_batch_summary(batch_id, summary)

            final_status = (
                BatchStatus.COMPLETED_WITH_FAILURES
                if summary.get("final_failed_count", 0) > 0
                else BatchStatus.COMPLETED
            )
            return await self.store.finalize_batch(batch_id, final_status, {**summary, "running_sequence": None})

        except Exception as exc:
            log.exception("self_improvement_batch_failed", error=str(exc))
            await self.db.rollback()
            await self.store.finalize_batch(
                batch_id,
                BatchStatus.FAILED,
                {
                    **summary,
                    "running_sequence": None,
                    "worker_failure": {"message": str(exc) or type(exc).__name__},
                },
            )
            raise

    async def _process_sequence(
        self,
        batch: SelfImprovementBatch,
        sequence_no: int,
        plan: ResumePlan,
    ) -> SequenceOutcome:
        # A rollback expires every loaded instance; keep plain copies of what the loop needs
        batch_id = batch.id
        retry_limit = batch.retry_limit
        outcome = SequenceOutcome.from_attempts(SequenceResult.FINAL_FAILED, plan.finished_attempts)
        carried = list(plan.carried_failed_metrics)
        attempt_no = plan.next_attempt_no or 1
        log = logger.bind(batch_id=str(batch_id), sequence_no=sequence_no)

        while True:
            await self.store.start_run_attempt(batch_id, sequence_no, attempt_no)
            try:
                result = await self.executor.run_attempt(batch, sequence_no, attempt_no, carried)
            except RulesRestoreError:
                raise
            except Exception as exc:
                await self.db.rollback()
                log.warning("loop_attempt_error", attempt_no=attempt_no, error=str(exc), error_type=type(exc).__name__)

                run_id = exc.run_id if isinstance(exc, LoopAttemptError) else None
                stats = exc.stats if isinstance(exc, LoopAttemptError) else {}
                context = build_self_correction_context(exc, stats)
                carried = unique(context.failed_gate_metrics + carried)
                status, retry = decide_attempt_status(False, True, attempt_no, retry_limit)
                await self.store.finalize_run_attempt(
                    batch_id,
                    sequence_no,
                    attempt_no,
                    status,
                    pipeline_run_id=run_id,
                    error={"message": context.failure_summary, "type": type(exc).__name__},
                    self_correction_context=context.to_dict(),
                    gate_result={"passed": False, "failed_metrics": carried},
                )
                batch = await self.store.get_batch(batch_id)
            else:
                status, retry = decide_attempt_status(
                    result.passed,
                    result.retryable_failure,
                    attempt_no,
                    retry_limit,
                )
                await self.store.finalize_run_attempt(
                    batch_id,
                    sequence_no,
                    attempt_no,
                    status,
                    pipeline_run_id=result.run_id,
                    error={},
                    self_correction_context=result.correction_context.to_dict() if result.correction_context else {},
                    gate_result=result.gate_result(),
                    learning_result=result.learning_result,
                )
                outcome.add_learning_result(result.learning_result)
                carried = unique(result.failed_metrics + carried)

            log.info("loop_attempt_finalized", attempt_no=attempt_no, status=status.value, retry=retry)
            if not retry:
                outcome.result = STATUS_TO_RESULT[status]
                return outcome
            attempt_no += 1

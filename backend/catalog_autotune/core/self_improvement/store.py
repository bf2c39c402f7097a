"""
Self-Improvement Store - Queue and persistence layer.

Every read and write the control loop makes against the database goes
through SelfImprovementStore. Batch claiming is the only operation that is
safe across worker processes; everything else assumes the caller owns the
batch it is touching.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

import structlog
from sqlalchemy import exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_autotune.core.models import (
    ACTIVE_BATCH_STATUSES,
    FINAL_RUN_STATUSES,
    AppliedChange,
    AppliedChangeStatus,
    AutoApplyPolicy,
    BatchStatus,
    BenchmarkSnapshot,
    HarnessRun,
    LearningProposal,
    LearningProposalDiff,
    LoopType,
    PipelineRunRecord,
    ProposalStatus,
    QaFeedback,
    QaStatus,
    RunAttemptStatus,
    SelfImprovementBatch,
    SelfImprovementRun,
    utcnow,
)
from catalog_autotune.core.self_improvement.phrase import over_cap_message

logger = structlog.get_logger(__name__)

STALE_RUN_MESSAGE = "stale_run_recovered_after_worker_interrupt"
STALE_RUN_SUMMARY = "Loop attempt recovered after worker interruption."


def initial_summary(requested_count: int) -> dict[str, Any]:
    return {
        "total_loops": requested_count,
        "completed_loops": 0,
        "failed_loops": 0,
        "success_count": 0,
        "retried_success_count": 0,
        "final_failed_count": 0,
        "gate_pass_rate": 0,
        "auto_applied_updates_count": 0,
    }


@dataclass
class BatchDetails:
    batch: SelfImprovementBatch
    runs: list[SelfImprovementRun] = field(default_factory=list)


@dataclass
class StaleRecoveryResult:
    recovered_runs: int = 0
    requeued_batches: int = 0


class SelfImprovementStore:
    """Async persistence for batches, attempts, proposals, and harness data."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==========================================================================
    # Batches
    # ==========================================================================

    async def enqueue_batch(
        self,
        requested_count: int,
        loop_type: LoopType,
        max_loops_cap: int,
        retry_limit: int,
        auto_apply_policy: AutoApplyPolicy = AutoApplyPolicy.IF_GATE_PASSES,
    ) -> BatchDetails:
        """Create a queued batch with one queued attempt-1 row per sequence."""
        if isinstance(requested_count, bool) or not isinstance(requested_count, int) or requested_count <= 0:
            raise ValueError("requested_count must be a positive integer.")
        if requested_count > max_loops_cap:
            raise ValueError(over_cap_message(requested_count, max_loops_cap))
        if retry_limit < 0:
            raise ValueError("retry_limit must be zero or greater.")

        batch = SelfImprovementBatch(
            id=uuid.uuid4(),
            requested_count=requested_count,
            loop_type=LoopType(loop_type),
            status=BatchStatus.QUEUED,
            max_loops_cap=max_loops_cap,
            retry_limit=retry_limit,
            auto_apply_policy=AutoApplyPolicy(auto_apply_policy),
            summary=initial_summary(requested_count),
        )
        self.db.add(batch)

        runs = []
        for sequence_no in range(1, requested_count + 1):
            run = SelfImprovementRun(
                batch_id=batch.id,
                sequence_no=sequence_no,
                attempt_no=1,
                status=RunAttemptStatus.QUEUED,
                error={},
                self_correction_context={},
                gate_result={},
                learning_result={},
            )
            self.db.add(run)
            runs.append(run)

        await self.db.commit()
        logger.info(
            "self_improvement_batch_enqueued",
            batch_id=str(batch.id),
            loop_type=batch.loop_type.value,
            requested_count=requested_count,
        )
        return BatchDetails(batch=batch, runs=runs)

    async def get_batch(self, batch_id: uuid.UUID) -> Optional[SelfImprovementBatch]:
        return await self.db.get(SelfImprovementBatch, batch_id, populate_existing=True)

    async def get_batch_status(self, batch_id: uuid.UUID) -> Optional[BatchStatus]:
        return await self.db.scalar(
            select(SelfImprovementBatch.status).where(SelfImprovementBatch.id == batch_id)
        )

    async def list_batches(
        self,
        limit: int = 20,
        include_finished: bool = False,
    ) -> list[SelfImprovementBatch]:
        query = select(SelfImprovementBatch)
        if not include_finished:
            query = query.where(SelfImprovementBatch.status.in_(ACTIVE_BATCH_STATUSES))
        query = query.order_by(SelfImprovementBatch.created_at.desc()).limit(max(1, limit))
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def get_batch_details(self, batch_id: uuid.UUID) -> Optional[BatchDetails]:
        batch = await self.get_batch(batch_id)
        if batch is None:
            return None
        return BatchDetails(batch=batch, runs=await self.list_batch_runs(batch_id))

    async def cancel_batch(self, batch_id: uuid.UUID) -> Optional[SelfImprovementBatch]:
        """Request cancellation. The worker honors it before its next sequence."""
        batch = await self.get_batch(batch_id)
        if batch is None or batch.status not in ACTIVE_BATCH_STATUSES:
            return None
        batch.status = BatchStatus.CANCELLED
        batch.finished_at = utcnow()
        await self.db.commit()
        logger.info("self_improvement_batch_cancelled", batch_id=str(batch_id))
        return batch

    async def claim_next_queued_batch(self) -> Optional[SelfImprovementBatch]:
        """
        Claim the oldest queued batch and flip it to running.

        The candidate row is selected with FOR UPDATE SKIP LOCKED; the flip
        itself is conditional on the row still being queued, so two workers
        can never both claim the same batch.
        """
        try:
            while True:
                candidate_id = await self.db.scalar(
                    select(SelfImprovementBatch.id)
                    .where(SelfImprovementBatch.status == BatchStatus.QUEUED)
                    .order_by(SelfImprovementBatch.created_at.asc())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                if candidate_id is None:
                    await self.db.commit()
                    return None
                if await self._claim_candidate(candidate_id):
                    await self.db.commit()
                    break
        except Exception:
            await self.db.rollback()
            raise

        batch = await self.get_batch(candidate_id)
        logger.info("self_improvement_batch_claimed", batch_id=str(candidate_id))
        return batch

    async def _claim_candidate(self, batch_id: uuid.UUID) -> bool:
        now = utcnow()
        result = await self.db.execute(
            update(SelfImprovementBatch)
            .where(
                SelfImprovementBatch.id == batch_id,
                SelfImprovementBatch.status == BatchStatus.QUEUED,
            )
            .values(
                status=BatchStatus.RUNNING,
                started_at=now,
                finished_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_batch_summary(self, batch_id: uuid.UUID, summary: dict[str, Any]) -> SelfImprovementBatch:
        batch = await self.get_batch(batch_id)
        if batch is None:
            raise ValueError(f"Could not update self-improvement batch summary for {batch_id}.")
        batch.summary = dict(summary)
        await self.db.commit()
        return batch

    async def finalize_batch(
        self,
        batch_id: uuid.UUID,
        status: BatchStatus,
        summary: dict[str, Any],
    ) -> SelfImprovementBatch:
        batch = await self.get_batch(batch_id)
        if batch is None:
            raise ValueError(f"Could not finalize self-improvement batch {batch_id}.")
        batch.status = status
        batch.summary = dict(summary)
        if batch.finished_at is None or status != BatchStatus.CANCELLED:
            batch.finished_at = utcnow()
        await self.db.commit()
        logger.info("self_improvement_batch_finalized", batch_id=str(batch_id), status=status.value)
        return batch

    async def recover_stale_batches(
        self,
        stale_after_minutes: int,
        now: Optional[datetime] = None,
    ) -> StaleRecoveryResult:
        """
        Fail attempts stuck in running past the staleness window and requeue
        their batches so another worker can resume them.
        """
        if stale_after_minutes <= 0:
            raise ValueError("stale_after_minutes must be positive.")
        now = now or utcnow()
        cutoff = now - timedelta(minutes=stale_after_minutes)
        recovery_stamp = {
            "recovered_at": now.isoformat(),
            "stale_timeout_minutes": stale_after_minutes,
        }
        result = StaleRecoveryResult()

        try:
            rows = (await self.db.execute(
                select(SelfImprovementRun, SelfImprovementBatch)
                .join(SelfImprovementBatch, SelfImprovementBatch.id == SelfImprovementRun.batch_id)
                .where(
                    SelfImprovementBatch.status == BatchStatus.RUNNING,
                    SelfImprovementRun.status == RunAttemptStatus.RUNNING,
                    SelfImprovementRun.started_at <= cutoff,
                )
                .execution_options(populate_existing=True)
            )).all()

            touched: dict[uuid.UUID, SelfImprovementBatch] = {}
            for run, batch in rows:
                run.status = (
                    RunAttemptStatus.RETRIED_FAILED
                    if run.attempt_no > batch.retry_limit
                    else RunAttemptStatus.FAILED
                )
                run.finished_at = now
                run.error = {**(run.error or {}), "message": STALE_RUN_MESSAGE, **recovery_stamp}
                run.self_correction_context = {
                    **(run.self_correction_context or {}),
                    "failure_summary": STALE_RUN_SUMMARY,
                }
                touched[batch.id] = batch
                result.recovered_runs += 1
            await self.db.flush()

            # Batches whose worker died between two sequences have no running attempt
            still_running = exists().where(
                SelfImprovementRun.batch_id == SelfImprovementBatch.id,
                SelfImprovementRun.status == RunAttemptStatus.RUNNING,
            )
            idle = (await self.db.execute(
                select(SelfImprovementBatch)
                .where(
                    SelfImprovementBatch.status == BatchStatus.RUNNING,
                    SelfImprovementBatch.updated_at <= cutoff,
                    ~still_running,
                )
                .execution_options(populate_existing=True)
            )).scalars().all()
            for batch in idle:
                touched.setdefault(batch.id, batch)

            for batch_id, batch in touched.items():
                running_left = await self.db.scalar(
                    select(func.count(SelfImprovementRun.id)).where(
                        SelfImprovementRun.batch_id == batch_id,
                        SelfImprovementRun.status == RunAttemptStatus.RUNNING,
                    )
                )
                if running_left:
                    continue
                batch.status = BatchStatus.QUEUED
                batch.finished_at = None
                batch.summary = {
                    **(batch.summary or {}),
                    "running_sequence": None,
                    "stale_recovery": recovery_stamp,
                }
                result.requeued_batches += 1

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if result.recovered_runs or result.requeued_batches:
            logger.warning(
                "self_improvement_stale_recovery",
                recovered_runs=result.recovered_runs,
                requeued_batches=result.requeued_batches,
                stale_after_minutes=stale_after_minutes,
            )
        return result

    # ==========================================================================
    # Run Attempts
    # ==========================================================================

    async def list_batch_runs(self, batch_id: uuid.UUID) -> list[SelfImprovementRun]:
        result = await self.db.execute(
            select(SelfImprovementRun)
            .where(SelfImprovementRun.batch_id == batch_id)
            .order_by(SelfImprovementRun.sequence_no.asc(), SelfImprovementRun.attempt_no.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _get_run(self, batch_id: uuid.UUID, sequence_no: int, attempt_no: int) -> Optional[SelfImprovementRun]:
        return await self.db.scalar(
            select(SelfImprovementRun)
            .where(
                SelfImprovementRun.batch_id == batch_id,
                SelfImprovementRun.sequence_no == sequence_no,
                SelfImprovementRun.attempt_no == attempt_no,
            )
            .execution_options(populate_existing=True)
        )

    async def start_run_attempt(self, batch_id: uuid.UUID, sequence_no: int, attempt_no: int) -> SelfImprovementRun:
        """Upsert the attempt row and mark it running."""
        if attempt_no < 1:
            raise ValueError("attempt_no is 1-based.")

        other_running = await self.db.scalar(
            select(SelfImprovementRun.attempt_no).where(
                SelfImprovementRun.batch_id == batch_id,
                SelfImprovementRun.sequence_no == sequence_no,
                SelfImprovementRun.attempt_no != attempt_no,
                SelfImprovementRun.status == RunAttemptStatus.RUNNING,
            ).limit(1)
        )
        if other_running is not None:
            raise RuntimeError(
                f"Sequence {sequence_no} of batch {batch_id} already has attempt {other_running} running."
            )

        run = await self._get_run(batch_id, sequence_no, attempt_no)
        if run is None:
            run = SelfImprovementRun(batch_id=batch_id, sequence_no=sequence_no, attempt_no=attempt_no)
            self.db.add(run)

        run.status = RunAttemptStatus.RUNNING
        run.pipeline_run_id = None
        run.error = {}
        run.self_correction_context = {}
        run.gate_result = {}
        run.learning_result = {}
        run.started_at = utcnow()
        run.finished_at = None
        await self.db.commit()
        return run

    async def finalize_run_attempt(
        self,
        batch_id: uuid.UUID,
        sequence_no: int,
        attempt_no: int,
        status: RunAttemptStatus,
        pipeline_run_id: Optional[str] = None,
        error: Optional[dict[str, Any]] = None,
        self_correction_context: Optional[dict[str, Any]] = None,
        gate_result: Optional[dict[str, Any]] = None,
        learning_result: Optional[dict[str, Any]] = None,
    ) -> SelfImprovementRun:
        """Record the terminal state of an attempt (upsert on the composite key)."""
        if status not in FINAL_RUN_STATUSES:
            raise ValueError(f"Cannot finalize an attempt with non-terminal status '{status.value}'.")

        run = await self._get_run(batch_id, sequence_no, attempt_no)
        if run is None:
            run = SelfImprovementRun(batch_id=batch_id, sequence_no=sequence_no, attempt_no=attempt_no)
            self.db.add(run)

        run.status = status
        run.pipeline_run_id = pipeline_run_id
        run.error = dict(error or {})
        run.self_correction_context = dict(self_correction_context or {})
        run.gate_result = dict(gate_result or {})
        run.learning_result = dict(learning_result or {})
        run.finished_at = utcnow()
        if run.started_at is None:
            run.started_at = run.finished_at
        await self.db.commit()
        return run

    # ==========================================================================
    # Proposals & Applied Changes
    # ==========================================================================

    async def insert_proposals(self, proposals: Sequence[LearningProposal]) -> list[LearningProposal]:
        for proposal in proposals:
            self.db.add(proposal)
        await self.db.commit()
        return list(proposals)

    async def list_pending_proposals(
        self,
        batch_id: Optional[uuid.UUID] = None,
        run_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[LearningProposal]:
        query = select(LearningProposal).where(LearningProposal.status == ProposalStatus.PROPOSED)
        if batch_id is not None:
            query = query.where(LearningProposal.batch_id == batch_id)
        if run_id is not None:
            query = query.where(LearningProposal.run_id == run_id)
        query = query.order_by(
            LearningProposal.expected_impact_score.desc(),
            LearningProposal.confidence_score.desc(),
            LearningProposal.created_at.asc(),
        ).limit(max(1, limit))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_proposal(self, proposal_id: uuid.UUID) -> Optional[LearningProposal]:
        return await self.db.get(LearningProposal, proposal_id, populate_existing=True)

    async def get_latest_proposal_diff(self, proposal_id: uuid.UUID) -> Optional[LearningProposalDiff]:
        result = await self.db.execute(
            select(LearningProposalDiff)
            .where(LearningProposalDiff.proposal_id == proposal_id)
            .order_by(LearningProposalDiff.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_applied_change(self, applied_change_id: uuid.UUID) -> Optional[AppliedChange]:
        return await self.db.get(AppliedChange, applied_change_id, populate_existing=True)

    async def list_recent_applied_changes(
        self,
        limit: int = 50,
        status: Optional[AppliedChangeStatus] = AppliedChangeStatus.APPLIED,
    ) -> list[AppliedChange]:
        query = select(AppliedChange)
        if status is not None:
            query = query.where(AppliedChange.status == status)
        query = query.order_by(AppliedChange.applied_at.desc()).limit(max(1, limit))
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    # ==========================================================================
    # Harness & Benchmarks
    # ==========================================================================

    async def record_harness_run(
        self,
        candidate_run_id: str,
        baseline_run_id: Optional[str],
        benchmark_snapshot_id: Optional[uuid.UUID],
        passed: bool,
        metric_scores: dict[str, Any],
        failed_metrics: list[str],
    ) -> HarnessRun:
        harness_run = HarnessRun(
            candidate_run_id=candidate_run_id,
            baseline_run_id=baseline_run_id,
            benchmark_snapshot_id=benchmark_snapshot_id,
            passed=passed,
            metric_scores=dict(metric_scores),
            failed_metrics=list(failed_metrics),
        )
        self.db.add(harness_run)
        await self.db.commit()
        return harness_run

    async def list_recent_harness_runs(self, limit: int = 20) -> list[HarnessRun]:
        result = await self.db.execute(
            select(HarnessRun).order_by(HarnessRun.created_at.desc()).limit(max(1, limit))
        )
        return list(result.scalars().all())

    async def create_benchmark_snapshot(
        self,
        store_id: str,
        source: str,
        row_count: int,
        sample_size: int,
        dataset_hash: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> BenchmarkSnapshot:
        snapshot = BenchmarkSnapshot(
            store_id=store_id,
            source=source,
            row_count=row_count,
            sample_size=sample_size,
            dataset_hash=dataset_hash,
            snapshot_metadata=dict(metadata or {}),
        )
        self.db.add(snapshot)
        await self.db.commit()
        return snapshot

    async def get_benchmark_snapshot(self, snapshot_id: uuid.UUID) -> Optional[BenchmarkSnapshot]:
        return await self.db.get(BenchmarkSnapshot, snapshot_id)

    async def get_latest_benchmark_snapshot(self, store_id: str) -> Optional[BenchmarkSnapshot]:
        return await self.db.scalar(
            select(BenchmarkSnapshot)
            .where(BenchmarkSnapshot.store_id == store_id)
            .order_by(BenchmarkSnapshot.created_at.desc())
            .limit(1)
        )

    # ==========================================================================
    # Pipeline Output
    # ==========================================================================

    async def get_pipeline_run(self, run_id: str) -> Optional[PipelineRunRecord]:
        return await self.db.get(PipelineRunRecord, run_id, populate_existing=True)

    async def get_run_stats(self, run_id: str) -> dict[str, Any]:
        run = await self.get_pipeline_run(run_id)
        if run is None:
            raise ValueError(f"Pipeline run {run_id} not found.")
        return dict(run.stats or {})

    async def list_recent_pipeline_runs(
        self,
        store_id: str,
        limit: int = 20,
        statuses: Optional[Sequence[str]] = None,
    ) -> list[PipelineRunRecord]:
        query = select(PipelineRunRecord).where(PipelineRunRecord.store_id == store_id)
        if statuses:
            query = query.where(PipelineRunRecord.status.in_(list(statuses)))
        query = query.order_by(PipelineRunRecord.started_at.desc()).limit(max(1, limit))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_qa_feedback_counts(self, store_id: str) -> dict[str, int]:
        rows = (await self.db.execute(
            select(QaFeedback.qa_status, func.count(QaFeedback.id))
            .where(QaFeedback.store_id == store_id)
            .group_by(QaFeedback.qa_status)
        )).all()
        counts = {status: count for status, count in rows}
        passed = counts.get(QaStatus.PASS, 0)
        failed = counts.get(QaStatus.FAIL, 0)
        return {"reviewed": passed + failed, "passed": passed, "failed": failed}

    async def list_qa_failures(self, store_id: str, limit: int = 500) -> list[QaFeedback]:
        result = await self.db.execute(
            select(QaFeedback)
            .where(
                QaFeedback.store_id == store_id,
                QaFeedback.qa_status == QaStatus.FAIL,
                QaFeedback.corrected_category_slug.is_not(None),
            )
            .order_by(QaFeedback.created_at.desc())
            .limit(max(1, limit))
        )
        return list(result.scalars().all())

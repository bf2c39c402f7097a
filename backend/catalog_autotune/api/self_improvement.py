"""
Self-Improvement API Routes.

REST endpoints for enqueueing, inspecting, and cancelling self-improvement
batches. Also exposes the manual learning steps (propose, harness
evaluation, apply, rollback) for batches run with the manual apply policy.
"""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_autotune.core.config import settings
from catalog_autotune.core.database import get_db
from catalog_autotune.core.models import AutoApplyPolicy, LoopType
from catalog_autotune.core.schemas import (
    AppliedChangeResponse,
    BatchCreate,
    BatchDetailResponse,
    BatchResponse,
    BatchStatusViewResponse,
    BenchmarkSnapshotRequest,
    BenchmarkSnapshotResponse,
    HarnessEvaluateRequest,
    HarnessResultResponse,
    LearnApplyRequest,
    LearnApplyResponse,
    PhraseRequest,
    PhraseResponse,
    ProposalResponse,
    ProposeRequest,
    ProposeResponse,
    RollbackRequest,
    RunAttemptResponse,
    StaleRecoveryResponse,
)
from catalog_autotune.core.self_improvement.harness import HarnessEvaluator
from catalog_autotune.core.self_improvement.learning import ApplyScope, LearningApplier, RollbackManager
from catalog_autotune.core.self_improvement.phrase import (
    EnqueueIntent,
    PhraseParseError,
    StatusAllIntent,
    parse_self_improvement_phrase,
)
from catalog_autotune.core.self_improvement.proposals import ProposalGenerator
from catalog_autotune.core.self_improvement.quality_gate import parse_confusion_alerts
from catalog_autotune.core.self_improvement.rule_patch import (
    JsonFileRulesRepository,
    RulesRepository,
    RulesVersionConflict,
)
from catalog_autotune.core.self_improvement.status import (
    derive_batch_status_view,
    derive_fallback_status_view,
)
from catalog_autotune.core.self_improvement.store import BatchDetails, SelfImprovementStore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/self-improvement", tags=["self-improvement"])


def get_rules_repository() -> RulesRepository:
    """Rules file dependency. Overridden in tests."""
    return JsonFileRulesRepository(settings.CATEGORY_RULES_PATH)


# ==========================================================================
# Helpers
# ==========================================================================

def _details_to_response(details: BatchDetails) -> BatchDetailResponse:
    return BatchDetailResponse(
        batch=BatchResponse.model_validate(details.batch),
        runs=[RunAttemptResponse.model_validate(run) for run in details.runs],
        view=BatchStatusViewResponse.model_validate(
            derive_batch_status_view(details.batch, details.runs)
        ),
    )


async def _enqueue(store: SelfImprovementStore, count: int, loop_type: LoopType) -> BatchDetails:
    try:
        return await store.enqueue_batch(
            requested_count=count,
            loop_type=loop_type,
            max_loops_cap=settings.SELF_IMPROVE_MAX_LOOPS,
            retry_limit=settings.SELF_IMPROVE_RETRY_LIMIT,
            auto_apply_policy=AutoApplyPolicy(settings.SELF_IMPROVE_AUTO_APPLY_POLICY),
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )


async def _status_views(
    store: SelfImprovementStore,
    limit: int,
    include_finished: bool,
) -> list[BatchStatusViewResponse]:
    views = []
    for batch in await store.list_batches(limit=limit, include_finished=include_finished):
        details = await store.get_batch_details(batch.id)
        view = (
            derive_batch_status_view(details.batch, details.runs)
            if details is not None
            else derive_fallback_status_view(batch)
        )
        views.append(BatchStatusViewResponse.model_validate(view))
    return views


def _parse_batch_id(raw: str) -> Optional[UUID]:
    try:
        return UUID(raw)
    except ValueError:
        return None


# ==========================================================================
# Endpoints
# ==========================================================================

@router.post("/batches", response_model=BatchDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_batch(
    request: BatchCreate,
    db: AsyncSession = Depends(get_db),
):
    """Enqueue a batch of sequential self-improvement loops."""
    details = await _enqueue(SelfImprovementStore(db), request.count, request.loop_type)
    return _details_to_response(details)


@router.post("/phrase", response_model=PhraseResponse)
async def run_phrase(
    request: PhraseRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Execute an operator phrase.

    Supported:
    - run <N> self-improvement <canary|full> loops
    - show self-improvement batches
    - show self-improvement batch <id>
    """
    try:
        intent = parse_self_improvement_phrase(request.phrase, settings.SELF_IMPROVE_MAX_LOOPS)
    except PhraseParseError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )

    store = SelfImprovementStore(db)

    if isinstance(intent, EnqueueIntent):
        details = await _enqueue(store, intent.count, intent.loop_type)
        return PhraseResponse(mode="enqueue", found=True, batch=_details_to_response(details))

    if isinstance(intent, StatusAllIntent):
        views = await _status_views(store, request.limit, request.include_finished)
        return PhraseResponse(mode="status_all", batches=views)

    batch_id = _parse_batch_id(intent.batch_id)
    details = await store.get_batch_details(batch_id) if batch_id else None
    return PhraseResponse(
        mode="status_one",
        found=details is not None,
        batch=_details_to_response(details) if details else None,
    )


@router.get("/batches", response_model=list[BatchStatusViewResponse])
async def list_batches(
    limit: int = 20,
    include_finished: bool = False,
    db: AsyncSession = Depends(get_db),
):
    """List batches, newest first. Only queued and running ones unless include_finished."""
    if limit <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="limit must be a positive integer",
        )
    return await _status_views(SelfImprovementStore(db), limit, include_finished)


@router.get("/batches/{batch_id}", response_model=BatchDetailResponse)
async def get_batch(
    batch_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    """Get a batch with every persisted attempt."""
    details = await SelfImprovementStore(db).get_batch_details(batch_id)
    if not details:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Self-improvement batch {batch_id} not found",
        )
    return _details_to_response(details)


@router.post("/batches/{batch_id}/cancel", response_model=BatchResponse)
async def cancel_batch(
    batch_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    """
    Cancel a queued or running batch.

    A running batch stops before its next sequence; the current attempt
    is allowed to finish.
    """
    store = SelfImprovementStore(db)
    batch = await store.get_batch(batch_id)
    if not batch:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Self-improvement batch {batch_id} not found",
        )

    cancelled = await store.cancel_batch(batch_id)
    if not cancelled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot cancel batch in {batch.status.value} status",
        )
    return BatchResponse.model_validate(cancelled)


# ==========================================================================
# Manual Learning
# ==========================================================================

async def _resolve_store_id(
    store: SelfImprovementStore,
    requested_store_id: Optional[str],
    candidate_run_id: Optional[str],
) -> str:
    if requested_store_id:
        return requested_store_id
    if candidate_run_id:
        run = await store.get_pipeline_run(candidate_run_id)
        if run is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Candidate run {candidate_run_id} not found",
            )
        return run.store_id
    return settings.STORE_ID


@router.post("/learning/proposals", response_model=ProposeResponse, status_code=status.HTTP_201_CREATED)
async def propose_learning_changes(
    request: ProposeRequest,
    db: AsyncSession = Depends(get_db),
    rules: RulesRepository = Depends(get_rules_repository),
):
    """
    Generate rule proposals for a batch or run.

    Confusion alerts come from the stats of run_id when given. Proposals are
    stored as pending; nothing touches the rules file.
    """
    store = SelfImprovementStore(db)
    alerts = []
    if request.run_id:
        run = await store.get_pipeline_run(request.run_id)
        if run is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Run {request.run_id} not found",
            )
        alerts = parse_confusion_alerts((run.stats or {}).get("top_confusion_alerts"))

    try:
        proposals = await ProposalGenerator(store, rules, settings).generate_for_run(
            batch_id=request.batch_id,
            run_id=request.run_id,
            failed_metrics=request.failed_metrics,
            alerts=alerts,
            max_proposals=request.max_proposals,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        )

    return ProposeResponse(
        batch_id=request.batch_id,
        run_id=request.run_id,
        failed_metrics=request.failed_metrics,
        proposals_generated=len(proposals),
        proposals=[ProposalResponse.model_validate(proposal) for proposal in proposals],
    )


@router.post("/harness/evaluate", response_model=HarnessResultResponse)
async def evaluate_harness(
    request: HarnessEvaluateRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Compare a candidate run against a baseline and record the harness run.

    Without candidate_run_id the latest non-failed run of the store is used.
    """
    store = SelfImprovementStore(db)
    store_id = await _resolve_store_id(store, request.store_id, request.candidate_run_id)

    candidate_run_id = request.candidate_run_id
    if not candidate_run_id:
        recent = await store.list_recent_pipeline_runs(store_id, limit=20)
        latest = next((run for run in recent if run.status != "failed"), None)
        if latest is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"No candidate run found for store '{store_id}'",
            )
        candidate_run_id = latest.id

    try:
        result = await HarnessEvaluator(store, settings, store_id=store_id).evaluate(
            candidate_run_id,
            baseline_run_id=request.baseline_run_id,
            benchmark_snapshot_id=request.benchmark_snapshot_id,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        )
    return HarnessResultResponse.model_validate(result)


@router.post("/learning/apply", response_model=LearnApplyResponse)
async def apply_learning_changes(
    request: LearnApplyRequest,
    db: AsyncSession = Depends(get_db),
    rules: RulesRepository = Depends(get_rules_repository),
):
    """
    Evaluate the harness for a candidate run, then apply pending proposals.

    Proposals of the batch/run scope are applied only when the harness
    passes; structural ones are capped per call.
    """
    candidate_run_id = request.candidate_run_id or request.run_id
    if not candidate_run_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing candidate run id. Provide candidate_run_id or run_id.",
        )

    store = SelfImprovementStore(db)
    store_id = await _resolve_store_id(store, None, candidate_run_id)
    harness_result = await HarnessEvaluator(store, settings, store_id=store_id).evaluate(
        candidate_run_id,
        baseline_run_id=request.baseline_run_id,
        benchmark_snapshot_id=request.benchmark_snapshot_id,
    )

    try:
        apply_result = await LearningApplier(store, rules).apply_pending(
            ApplyScope(batch_id=request.batch_id, run_id=request.run_id),
            harness_result,
            max_structural_changes=settings.SELF_IMPROVE_MAX_STRUCTURAL_CHANGES_PER_LOOP,
        )
    except (ValueError, RulesVersionConflict) as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        )

    logger.info(
        "learning_apply_requested",
        candidate_run_id=candidate_run_id,
        harness_passed=harness_result.passed,
        applied=apply_result.applied,
    )
    return LearnApplyResponse(
        harness=HarnessResultResponse.model_validate(harness_result),
        considered=apply_result.considered,
        applied=apply_result.applied,
        structural_applied=apply_result.structural_applied,
        applied_changes=[AppliedChangeResponse.model_validate(change) for change in apply_result.applied_changes],
    )


@router.post(
    "/harness/benchmark-snapshots",
    response_model=BenchmarkSnapshotResponse,
    status_code=status.HTTP_201_CREATED,
)
async def build_benchmark_snapshot(
    request: BenchmarkSnapshotRequest,
    db: AsyncSession = Depends(get_db),
):
    """Snapshot QA feedback volume and recent hard cases for a store."""
    store_id = request.store_id or settings.STORE_ID
    snapshot = await HarnessEvaluator(SelfImprovementStore(db), settings, store_id=store_id).build_benchmark_snapshot()
    return BenchmarkSnapshotResponse.model_validate(snapshot)


@router.post("/applied-changes/{applied_change_id}/rollback", response_model=AppliedChangeResponse)
async def rollback_applied_change(
    applied_change_id: UUID,
    request: RollbackRequest,
    db: AsyncSession = Depends(get_db),
    rules: RulesRepository = Depends(get_rules_repository),
):
    """Revert an applied rules change and record a rollback event."""
    store = SelfImprovementStore(db)
    if not await store.get_applied_change(applied_change_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Applied change {applied_change_id} not found",
        )

    try:
        change = await RollbackManager(store, rules).rollback_change(
            applied_change_id,
            reason=request.reason,
            metadata={"trigger": "api"},
        )
    except (ValueError, RulesVersionConflict) as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        )

    logger.info("applied_change_rolled_back", applied_change_id=str(applied_change_id), reason=request.reason)
    return AppliedChangeResponse.model_validate(change)


@router.post("/recover-stale", response_model=StaleRecoveryResponse)
async def recover_stale_batches(
    stale_after_minutes: Optional[int] = None,
    db: AsyncSession = Depends(get_db),
):
    """Requeue batches whose worker stopped reporting progress."""
    minutes = stale_after_minutes if stale_after_minutes is not None else settings.SELF_IMPROVE_STALE_AFTER_MINUTES
    if minutes <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="stale_after_minutes must be a positive integer",
        )
    result = await SelfImprovementStore(db).recover_stale_batches(minutes)
    return StaleRecoveryResponse(
        recovered_runs=result.recovered_runs,
        requeued_batches=result.requeued_batches,
    )

"""
Loop Attempt Executor - Runs one attempt of one batch sequence.

An attempt runs the pipeline (whole catalog or canary subset), evaluates
the quality gate, generates proposals, evaluates the harness, decides how
much of the proposals may be applied, applies them, and finally rolls back
the latest in-scope change if the harness reported degradation.
"""

import enum
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import structlog

from catalog_autotune.core.config import Settings, get_settings
from catalog_autotune.core.models import AutoApplyPolicy, LoopType, SelfImprovementBatch, utcnow
from catalog_autotune.core.self_improvement.collaborators import (
    CanarySubsetBuilder,
    PipelineRunner,
    PipelineRunOutput,
    read_canary_state,
    resolve_hotlist_path,
    write_canary_state,
)
from catalog_autotune.core.self_improvement.harness import HarnessEvaluator
from catalog_autotune.core.self_improvement.learning import (
    ApplyResult,
    ApplyScope,
    LearningApplier,
    RollbackManager,
    RulesRestoreError,
)
from catalog_autotune.core.self_improvement.proposals import (
    ProposalGenerator,
    clamp,
    has_high_severity_schema_violations,
)
from catalog_autotune.core.self_improvement.quality_gate import (
    QualityGateResult,
    SelfCorrectionContext,
    as_number,
    build_self_correction_context,
    evaluate_quality_gate,
    parse_confusion_alerts,
    unique,
)
from catalog_autotune.core.self_improvement.rule_patch import RulesRepository
from catalog_autotune.core.self_improvement.store import SelfImprovementStore

logger = structlog.get_logger(__name__)

GATE_FAILURE_SUMMARY = "Self-improvement loop failed one or more gates."


class LoopAttemptError(RuntimeError):
    """
    Runtime failure after the pipeline run completed.

    Carries the run id and stats so the failed attempt still records which
    run it produced and which gate metrics that run missed.
    """

    def __init__(self, message: str, run_id: Optional[str] = None, stats: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.run_id = run_id
        self.stats = stats or {}


# ==========================================================================
# Apply-Mode Decision
# ==========================================================================

class ApplyMode(str, enum.Enum):
    FULL = "full"
    PARTIAL_LOW_RISK = "partial_low_risk"
    NONE = "none"


@dataclass(frozen=True)
class ApplyModeInput:
    loop_type: LoopType
    auto_apply_policy: AutoApplyPolicy
    harness_passed: bool
    quality_gate_passed: bool
    quality_gate_base_passed: bool
    high_severity_schema_violations: bool
    canary_auto_accepted_rate: Optional[float]
    canary_full_apply_threshold: float
    canary_partial_apply_threshold: float
    canary_retry_degrade_mode: bool
    max_structural_changes_per_loop: int


@dataclass(frozen=True)
class ApplyModeDecision:
    mode: ApplyMode
    should_apply: bool
    max_structural_changes: int


def decide_apply_mode(decision_input: ApplyModeInput) -> ApplyModeDecision:
    """
    Decide how much of an attempt's proposals may be auto-applied.

    Harness failure or a manual policy never applies. Full loops apply
    everything when the quality gate passed. Canary loops apply everything
    above the full threshold, only non-structural proposals between the
    partial and full thresholds (and only if the base gate passed and no
    payload is malformed), and nothing below. Degrade mode never allows
    structural changes.
    """
    structural_cap = max(0, decision_input.max_structural_changes_per_loop)
    if decision_input.canary_retry_degrade_mode:
        structural_cap = 0

    if decision_input.auto_apply_policy != AutoApplyPolicy.IF_GATE_PASSES or not decision_input.harness_passed:
        return ApplyModeDecision(ApplyMode.NONE, False, 0)

    if decision_input.loop_type != LoopType.CANARY:
        if decision_input.quality_gate_passed:
            return ApplyModeDecision(ApplyMode.FULL, True, structural_cap)
        return ApplyModeDecision(ApplyMode.NONE, False, 0)

    rate = decision_input.canary_auto_accepted_rate
    if rate is None:
        return ApplyModeDecision(ApplyMode.NONE, False, 0)

    if rate >= decision_input.canary_full_apply_threshold and decision_input.quality_gate_passed:
        return ApplyModeDecision(ApplyMode.FULL, True, structural_cap)

    if (
        decision_input.canary_partial_apply_threshold <= rate < decision_input.canary_full_apply_threshold
        and decision_input.quality_gate_base_passed
        and not decision_input.high_severity_schema_violations
    ):
        return ApplyModeDecision(ApplyMode.PARTIAL_LOW_RISK, True, 0)

    return ApplyModeDecision(ApplyMode.NONE, False, 0)


def build_run_label(loop_type: LoopType, batch_id: uuid.UUID, sequence_no: int, attempt_no: int) -> str:
    timestamp = utcnow().isoformat().replace("+00:00", "Z")
    return f"self-improve-{loop_type.value}-{batch_id}-seq{sequence_no}-attempt{attempt_no}-{timestamp}"


# ==========================================================================
# Executor
# ==========================================================================

@dataclass
class LoopAttemptResult:
    run_id: str
    passed: bool
    retryable_failure: bool
    quality_gate: QualityGateResult
    harness_passed: bool
    failed_metrics: list[str] = field(default_factory=list)
    correction_context: Optional[SelfCorrectionContext] = None
    harness_delta: float = 0.0
    learning_result: dict[str, Any] = field(default_factory=dict)

    def gate_result(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "quality_gate_passed": self.quality_gate.passed,
            "quality_gate_base_passed": self.quality_gate.base_passed,
            "harness_passed": self.harness_passed,
            "failed_metrics": list(self.failed_metrics),
            "quality_gate_metrics": dict(self.quality_gate.metrics),
        }


class LoopAttemptExecutor:
    """Executes a single self-improvement loop attempt."""

    def __init__(
        self,
        store: SelfImprovementStore,
        pipeline_runner: PipelineRunner,
        rules: RulesRepository,
        canary_builder: Optional[CanarySubsetBuilder] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.pipeline_runner = pipeline_runner
        self.canary_builder = canary_builder
        self.settings = settings or get_settings()
        self.harness = HarnessEvaluator(store, self.settings)
        self.proposal_generator = ProposalGenerator(store, rules, self.settings)
        self.applier = LearningApplier(store, rules)
        self.rollback_manager = RollbackManager(store, rules)

    def is_degrade_mode(self, loop_type: LoopType, attempt_no: int) -> bool:
        return (
            self.settings.SELF_IMPROVE_CANARY_RETRY_DEGRADE_ENABLED
            and loop_type == LoopType.CANARY
            and attempt_no > 1
        )

    async def run_attempt(
        self,
        batch: SelfImprovementBatch,
        sequence_no: int,
        attempt_no: int,
        previous_failed_metrics: Optional[list[str]] = None,
    ) -> LoopAttemptResult:
        degrade_mode = self.is_degrade_mode(batch.loop_type, attempt_no)
        log = logger.bind(
            batch_id=str(batch.id),
            sequence_no=sequence_no,
            attempt_no=attempt_no,
            loop_type=batch.loop_type.value,
        )
        log.info("loop_attempt_started", degrade_mode=degrade_mode)

        run_output = await self._execute_loop(batch, sequence_no, attempt_no)
        stats: dict[str, Any] = {}
        try:
            stats = await self.store.get_run_stats(run_output.run_id)
            result = await self._evaluate_and_learn(
                batch,
                run_output.run_id,
                stats,
                previous_failed_metrics or [],
                degrade_mode,
            )
        except RulesRestoreError:
            raise
        except Exception as exc:
            raise LoopAttemptError(
                str(exc) or type(exc).__name__,
                run_id=run_output.run_id,
                stats=stats,
            ) from exc

        log.info(
            "loop_attempt_finished",
            run_id=result.run_id,
            passed=result.passed,
            failed_metrics=result.failed_metrics,
            apply_mode=result.learning_result.get("apply_mode"),
        )
        return result

    async def _execute_loop(
        self,
        batch: SelfImprovementBatch,
        sequence_no: int,
        attempt_no: int,
    ) -> PipelineRunOutput:
        input_path = self.settings.CATALOG_INPUT_PATH
        if not input_path:
            raise ValueError("CATALOG_INPUT_PATH must be set to run self-improvement loops.")
        run_label = build_run_label(batch.loop_type, batch.id, sequence_no, attempt_no)

        if batch.loop_type == LoopType.FULL:
            return await self.pipeline_runner.run(input_path, self.settings.STORE_ID, run_label)

        if self.canary_builder is None:
            raise RuntimeError("Canary loops need a canary subset builder.")

        state_path = self.settings.CANARY_STATE_PATH
        hotlist_path = resolve_hotlist_path(state_path, read_canary_state(state_path))
        subset_path = await self.canary_builder.build(
            input_path,
            self.settings.CANARY_SAMPLE_SIZE,
            self.settings.CANARY_FIXED_RATIO,
            self.settings.CANARY_RANDOM_SEED,
            hotlist_path,
        )
        output = await self.pipeline_runner.run(subset_path, self.settings.STORE_ID, run_label)

        artifact = output.find_confusion_hotlist()
        if artifact is None:
            raise RuntimeError(f"Canary run {output.run_id} did not produce a confusion hotlist artifact.")
        write_canary_state(
            state_path,
            output.run_id,
            str((Path(self.settings.OUTPUT_DIR) / artifact.file_name).resolve()),
        )
        return output

    async def _evaluate_and_learn(
        self,
        batch: SelfImprovementBatch,
        run_id: str,
        stats: dict[str, Any],
        previous_failed_metrics: list[str],
        degrade_mode: bool,
    ) -> LoopAttemptResult:
        is_canary = batch.loop_type == LoopType.CANARY
        min_confidence = (
            clamp(self.settings.SELF_IMPROVE_CANARY_RETRY_MIN_PROPOSAL_CONFIDENCE) if degrade_mode else 0.0
        )
        allow_structural = not degrade_mode

        quality_gate = evaluate_quality_gate(
            stats,
            require_canary_threshold=is_canary,
            canary_threshold=self.settings.CANARY_AUTO_ACCEPT_THRESHOLD,
        )
        merged_metrics = unique(quality_gate.failed_metrics + previous_failed_metrics)
        alerts = parse_confusion_alerts(stats.get("top_confusion_alerts"))

        proposals = await self.proposal_generator.generate_for_run(
            batch_id=batch.id,
            run_id=run_id,
            failed_metrics=merged_metrics,
            alerts=alerts,
            max_proposals=self.settings.SELF_IMPROVE_MAX_PROPOSALS_PER_LOOP,
            min_confidence=min_confidence,
            allow_structural=allow_structural,
        )
        violations = has_high_severity_schema_violations(proposals)

        harness_result = await self.harness.evaluate(run_id)

        decision = decide_apply_mode(ApplyModeInput(
            loop_type=batch.loop_type,
            auto_apply_policy=batch.auto_apply_policy,
            harness_passed=harness_result.passed,
            quality_gate_passed=quality_gate.passed,
            quality_gate_base_passed=quality_gate.base_passed,
            high_severity_schema_violations=violations,
            canary_auto_accepted_rate=as_number(stats.get("auto_accepted_rate")) if is_canary else None,
            canary_full_apply_threshold=self.settings.CANARY_AUTO_ACCEPT_THRESHOLD,
            canary_partial_apply_threshold=self.settings.SELF_IMPROVE_CANARY_PARTIAL_APPLY_THRESHOLD,
            canary_retry_degrade_mode=degrade_mode,
            max_structural_changes_per_loop=self.settings.SELF_IMPROVE_MAX_STRUCTURAL_CHANGES_PER_LOOP,
        ))

        scope = ApplyScope(batch_id=batch.id, run_id=run_id)
        apply_result = ApplyResult()
        if decision.should_apply:
            apply_result = await self.applier.apply_pending(
                scope,
                harness_result,
                max_structural_changes=decision.max_structural_changes,
            )

        rollback = await self.rollback_manager.rollback_on_harness_degrade(
            scope,
            harness_result,
            watch_loops=self.settings.SELF_IMPROVE_POST_APPLY_WATCH_LOOPS,
            enabled=self.settings.SELF_IMPROVE_ROLLBACK_ON_DEGRADE,
        )

        passed = quality_gate.passed and harness_result.passed
        failed_metrics = unique(merged_metrics + harness_result.failed_metrics)
        correction_context = None
        if not passed:
            correction_context = build_self_correction_context(GATE_FAILURE_SUMMARY, stats)

        return LoopAttemptResult(
            run_id=run_id,
            passed=passed,
            # Gate and harness rejections are retried within the live retry budget
            retryable_failure=not passed,
            quality_gate=quality_gate,
            harness_passed=harness_result.passed,
            failed_metrics=failed_metrics,
            correction_context=correction_context,
            harness_delta=harness_result.harness_delta,
            learning_result={
                "proposals_generated": len(proposals),
                "proposals_applied": apply_result.applied,
                "structural_applies": apply_result.structural_applied,
                "auto_applied_updates": apply_result.applied,
                "apply_mode": decision.mode.value,
                "rollback_triggered": rollback.rolled_back,
                "rollback_change_id": str(rollback.change.id) if rollback.change else None,
                "gate_failed_metrics": failed_metrics,
                "harness_passed": harness_result.passed,
                "quality_gate_passed": quality_gate.passed,
                "benchmark_snapshot_id": (
                    str(harness_result.benchmark_snapshot_id) if harness_result.benchmark_snapshot_id else None
                ),
                "harness_failed_metrics": list(harness_result.failed_metrics),
                "harness_metric_scores": dict(harness_result.metric_scores),
                "harness_delta": harness_result.harness_delta,
                "high_severity_schema_violations": violations,
                "candidate_fixes": unique([proposal.payload.get("reason", "") for proposal in proposals]),
                "canary_retry_degrade_mode": degrade_mode,
                "proposal_min_confidence": min_confidence,
                "structural_proposals_allowed": allow_structural,
            },
        )

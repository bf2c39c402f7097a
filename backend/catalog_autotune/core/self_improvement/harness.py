"""
Harness Evaluator - Candidate vs. baseline comparison.

A candidate pipeline run passes the harness when the benchmark sample is
large enough, its fallback and needs-review rates stay under the configured
maxima, and none of its L1/L2/L3 accuracies regressed against the baseline
run by more than the configured minimum delta.
"""

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from catalog_autotune.core.config import Settings, get_settings
from catalog_autotune.core.models import BenchmarkSnapshot
from catalog_autotune.core.self_improvement.quality_gate import as_number
from catalog_autotune.core.self_improvement.store import SelfImprovementStore

logger = structlog.get_logger(__name__)

BENCHMARK_STRATEGY = "qa_feedback_plus_hard_cases"
HARD_CASE_RUN_STATUSES = ("completed_pending_review", "accepted", "rejected")
HARD_CASE_RUN_WINDOW = 15
BASELINE_SEARCH_WINDOW = 20
ACCURACY_LEVELS = (1, 2, 3)


@dataclass
class HarnessEvalResult:
    passed: bool
    candidate_run_id: str
    baseline_run_id: Optional[str] = None
    benchmark_snapshot_id: Optional[uuid.UUID] = None
    metric_scores: dict[str, float] = field(default_factory=dict)
    failed_metrics: list[str] = field(default_factory=list)

    @property
    def harness_delta(self) -> float:
        """Mean of the L1/L2/L3 accuracy deltas."""
        deltas = [float(self.metric_scores.get(f"l{level}_delta", 0.0)) for level in ACCURACY_LEVELS]
        return sum(deltas) / len(deltas)


def dataset_hash(value: dict[str, Any]) -> str:
    canonical = json.dumps(value, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class HarnessEvaluator:
    """Evaluates candidate runs against a baseline and a benchmark snapshot."""

    def __init__(
        self,
        store: SelfImprovementStore,
        settings: Optional[Settings] = None,
        store_id: Optional[str] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.store_id = store_id or self.settings.STORE_ID

    async def build_benchmark_snapshot(self) -> BenchmarkSnapshot:
        """Snapshot the QA feedback volume plus recent hard cases for the store."""
        qa_counts = await self.store.get_qa_feedback_counts(self.store_id)
        recent_runs = await self.store.list_recent_pipeline_runs(
            self.store_id,
            limit=HARD_CASE_RUN_WINDOW,
            statuses=HARD_CASE_RUN_STATUSES,
        )
        hard_cases = 0
        for run in recent_runs:
            alerts = (run.stats or {}).get("top_confusion_alerts")
            if isinstance(alerts, list):
                hard_cases += len(alerts)

        source = {
            "strategy": BENCHMARK_STRATEGY,
            "qa_reviewed_count": qa_counts["reviewed"],
            "qa_fail_count": qa_counts["failed"],
            "qa_pass_count": qa_counts["passed"],
            "hard_case_count": hard_cases,
        }
        row_count = qa_counts["reviewed"] + hard_cases

        snapshot = await self.store.create_benchmark_snapshot(
            store_id=self.store_id,
            source=BENCHMARK_STRATEGY,
            row_count=row_count,
            sample_size=row_count,
            dataset_hash=dataset_hash({
                "store_id": self.store_id,
                "source": source,
                "row_count": row_count,
                "sample_size": row_count,
            }),
            metadata=source,
        )
        logger.info(
            "benchmark_snapshot_built",
            snapshot_id=str(snapshot.id),
            store_id=self.store_id,
            sample_size=row_count,
        )
        return snapshot

    async def resolve_benchmark_snapshot(self, snapshot_id: Optional[uuid.UUID] = None) -> BenchmarkSnapshot:
        snapshot = None
        if snapshot_id is not None:
            snapshot = await self.store.get_benchmark_snapshot(snapshot_id)
        if snapshot is None:
            snapshot = await self.store.get_latest_benchmark_snapshot(self.store_id)
        if snapshot is None:
            snapshot = await self.build_benchmark_snapshot()
        return snapshot

    async def resolve_baseline_run_id(self, candidate_run_id: str) -> Optional[str]:
        """Most recent non-failed run of the store that is not the candidate."""
        recent = await self.store.list_recent_pipeline_runs(self.store_id, limit=BASELINE_SEARCH_WINDOW)
        for run in recent:
            if run.id != candidate_run_id and run.status != "failed":
                return run.id
        return None

    async def evaluate(
        self,
        candidate_run_id: str,
        baseline_run_id: Optional[str] = None,
        benchmark_snapshot_id: Optional[uuid.UUID] = None,
    ) -> HarnessEvalResult:
        candidate = await self.store.get_pipeline_run(candidate_run_id)
        if candidate is None:
            raise ValueError(f"Candidate run {candidate_run_id} not found for harness evaluation.")

        baseline_run_id = baseline_run_id or await self.resolve_baseline_run_id(candidate_run_id)
        baseline = await self.store.get_pipeline_run(baseline_run_id) if baseline_run_id else None
        snapshot = await self.resolve_benchmark_snapshot(benchmark_snapshot_id)

        candidate_stats = candidate.stats or {}
        baseline_stats = (baseline.stats or {}) if baseline is not None else {}
        failed: list[str] = []

        if snapshot.sample_size < self.settings.SELF_IMPROVE_GATE_MIN_SAMPLE_SIZE:
            failed.append("benchmark_sample_size")

        fallback_rate = as_number(candidate_stats.get("fallback_category_rate"))
        if fallback_rate is not None and fallback_rate > self.settings.HARNESS_MAX_FALLBACK_RATE:
            failed.append("fallback_category_rate")

        needs_review_rate = as_number(candidate_stats.get("needs_review_rate"))
        if needs_review_rate is not None and needs_review_rate > self.settings.HARNESS_MAX_NEEDS_REVIEW_RATE:
            failed.append("needs_review_rate")

        metric_scores: dict[str, float] = {
            "benchmark_sample_size": snapshot.sample_size,
            "candidate_fallback_category_rate": fallback_rate or 0.0,
            "candidate_needs_review_rate": needs_review_rate or 0.0,
        }

        for level in ACCURACY_LEVELS:
            key = f"l{level}_accuracy"
            candidate_value = as_number(candidate_stats.get(key))
            baseline_value = as_number(baseline_stats.get(key))
            delta = 0.0
            if candidate_value is not None and baseline_value is not None:
                delta = candidate_value - baseline_value
                if delta < getattr(self.settings, f"HARNESS_MIN_L{level}_DELTA"):
                    failed.append(f"l{level}_delta")
            metric_scores[f"l{level}_delta"] = delta

        result = HarnessEvalResult(
            passed=not failed,
            candidate_run_id=candidate_run_id,
            baseline_run_id=baseline_run_id,
            benchmark_snapshot_id=snapshot.id,
            metric_scores=metric_scores,
            failed_metrics=failed,
        )
        await self.store.record_harness_run(
            candidate_run_id=candidate_run_id,
            baseline_run_id=baseline_run_id,
            benchmark_snapshot_id=snapshot.id,
            passed=result.passed,
            metric_scores=metric_scores,
            failed_metrics=failed,
        )
        logger.info(
            "harness_evaluated",
            candidate_run_id=candidate_run_id,
            baseline_run_id=baseline_run_id,
            passed=result.passed,
            failed_metrics=failed,
        )
        return result

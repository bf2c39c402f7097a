"""
Harness Evaluator Tests
=======================
"""

from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_autotune.core.config import Settings
from catalog_autotune.core.models import PipelineRunRecord, QaFeedback, QaStatus, utcnow
from catalog_autotune.core.self_improvement.harness import BENCHMARK_STRATEGY, HarnessEvaluator
from catalog_autotune.core.self_improvement.store import SelfImprovementStore


async def add_run(
    db: AsyncSession,
    run_id: str,
    stats: dict[str, Any],
    minutes_ago: int = 0,
    status: str = "completed_pending_review",
) -> PipelineRunRecord:
    record = PipelineRunRecord(
        id=run_id,
        store_id="default",
        status=status,
        stats=stats,
        started_at=utcnow() - timedelta(minutes=minutes_ago),
    )
    db.add(record)
    await db.commit()
    return record


@pytest.fixture
def evaluator(db_session: AsyncSession, loop_settings: Settings) -> HarnessEvaluator:
    return HarnessEvaluator(SelfImprovementStore(db_session), settings=loop_settings)


class TestHarnessEvaluate:
    async def test_candidate_without_baseline_passes(self, db_session: AsyncSession, evaluator: HarnessEvaluator):
        await add_run(db_session, "cand", {"fallback_category_rate": 0.01, "needs_review_rate": 0.1})

        result = await evaluator.evaluate("cand")

        assert result.passed
        assert result.baseline_run_id is None
        assert result.harness_delta == 0.0
        runs = await SelfImprovementStore(db_session).list_recent_harness_runs()
        assert len(runs) == 1
        assert runs[0].passed is True

    async def test_accuracy_regression_fails_level(self, db_session: AsyncSession, evaluator: HarnessEvaluator):
        await add_run(db_session, "base", {"l1_accuracy": 0.9, "l2_accuracy": 0.8, "l3_accuracy": 0.6}, minutes_ago=30)
        await add_run(db_session, "cand", {"l1_accuracy": 0.85, "l2_accuracy": 0.8, "l3_accuracy": 0.75})

        result = await evaluator.evaluate("cand")

        assert result.baseline_run_id == "base"
        assert result.failed_metrics == ["l1_delta"]
        assert result.metric_scores["l1_delta"] == pytest.approx(-0.05)
        assert result.metric_scores["l3_delta"] == pytest.approx(0.15)
        assert result.harness_delta == pytest.approx(0.1 / 3)

    async def test_failed_runs_are_not_baselines(self, db_session: AsyncSession, evaluator: HarnessEvaluator):
        await add_run(db_session, "good", {"l1_accuracy": 0.5}, minutes_ago=60)
        await add_run(db_session, "broken", {}, minutes_ago=10, status="failed")
        await add_run(db_session, "cand", {"l1_accuracy": 0.6})

        assert await evaluator.resolve_baseline_run_id("cand") == "good"

    async def test_rate_maxima(self, db_session: AsyncSession, evaluator: HarnessEvaluator):
        await add_run(db_session, "cand", {"fallback_category_rate": 0.2, "needs_review_rate": 0.5})

        result = await evaluator.evaluate("cand")

        assert result.failed_metrics == ["fallback_category_rate", "needs_review_rate"]

    async def test_small_benchmark_fails(self, db_session: AsyncSession, loop_settings: Settings):
        settings = loop_settings.model_copy(update={"SELF_IMPROVE_GATE_MIN_SAMPLE_SIZE": 50})
        evaluator = HarnessEvaluator(SelfImprovementStore(db_session), settings=settings)
        await add_run(db_session, "cand", {})

        result = await evaluator.evaluate("cand")

        assert not result.passed
        assert "benchmark_sample_size" in result.failed_metrics

    async def test_unknown_candidate_is_rejected(self, evaluator: HarnessEvaluator):
        with pytest.raises(ValueError, match="not found"):
            await evaluator.evaluate("missing")


class TestBenchmarkSnapshot:
    async def test_snapshot_counts_qa_and_hard_cases(self, db_session: AsyncSession, evaluator: HarnessEvaluator):
        db_session.add_all([
            QaFeedback(store_id="default", sku="A-1", qa_status=QaStatus.PASS),
            QaFeedback(store_id="default", sku="A-2", qa_status=QaStatus.FAIL, corrected_category_slug="drill-bits"),
            QaFeedback(store_id="other", sku="B-1", qa_status=QaStatus.FAIL),
        ])
        await db_session.commit()
        await add_run(db_session, "r1", {"top_confusion_alerts": [{"category_slug": "power-drills"}] * 3})

        snapshot = await evaluator.build_benchmark_snapshot()

        assert snapshot.source == BENCHMARK_STRATEGY
        assert snapshot.sample_size == 5
        assert snapshot.snapshot_metadata["qa_fail_count"] == 1
        assert snapshot.snapshot_metadata["hard_case_count"] == 3
        assert len(snapshot.dataset_hash) == 64

    async def test_latest_snapshot_is_reused(self, evaluator: HarnessEvaluator):
        first = await evaluator.resolve_benchmark_snapshot()
        second = await evaluator.resolve_benchmark_snapshot()

        assert first.id == second.id
